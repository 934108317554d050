"""Tests for stack trace parsing and conversion."""

from fleet_test_runner.models.stack_trace import StackTrace, StackTraceElement


def test_from_string_single_trace() -> None:
    """Parses class, message and frames of a simple trace."""
    trace = StackTrace.from_string(
        "java.lang.AssertionError: expected:<1> but was:<2>\n"
        "\tat org.junit.Assert.fail(Assert.java:88)\n"
        "\tat com.example.FooTest.testBar(FooTest.java:42)\n"
    )

    assert trace.class_name == "java.lang.AssertionError"
    assert trace.message == "expected:<1> but was:<2>"
    assert trace.cause is None
    assert trace.elements == (
        StackTraceElement(
            class_name="org.junit.Assert",
            method_name="fail",
            file_name="Assert.java",
            line=88,
        ),
        StackTraceElement(
            class_name="com.example.FooTest",
            method_name="testBar",
            file_name="FooTest.java",
            line=42,
        ),
    )
    assert str(trace) == "java.lang.AssertionError: expected:<1> but was:<2>"


def test_from_string_without_message() -> None:
    """A header without a colon is a bare class name."""
    trace = StackTrace.from_string(
        "java.lang.NullPointerException\n\tat com.example.Foo.bar(Foo.java:1)"
    )

    assert trace.class_name == "java.lang.NullPointerException"
    assert trace.message is None
    assert len(trace.elements) == 1


def test_from_string_multiline_message() -> None:
    """Message lines above the frames are joined."""
    trace = StackTrace.from_string(
        "java.lang.IllegalStateException: first line\n"
        "second line\n"
        "\tat com.example.Foo.bar(Foo.java:1)"
    )

    assert trace.message == "first line\nsecond line"


def test_from_string_cause_chain() -> None:
    """Every "Caused by" header becomes the cause of the trace above it."""
    trace = StackTrace.from_string(
        "java.lang.RuntimeException: outer\n"
        "\tat com.example.Foo.outer(Foo.java:10)\n"
        "Caused by: java.io.IOException: middle\n"
        "\tat com.example.Foo.middle(Foo.java:20)\n"
        "\t... 1 more\n"
        "Caused by: java.lang.IllegalArgumentException\n"
        "\tat dalvik.system.VMStack.getThreadStackTrace(Native Method)\n"
        "\t... 2 more\n"
    )

    assert trace.class_name == "java.lang.RuntimeException"
    assert trace.message == "outer"
    assert trace.cause is not None
    assert trace.cause.class_name == "java.io.IOException"
    assert trace.cause.message == "middle"
    assert trace.cause.elements[0].line == 20

    root = trace.cause.cause
    assert root is not None
    assert root.class_name == "java.lang.IllegalArgumentException"
    assert root.message is None
    assert root.elements[0].is_native
    assert root.elements[0].file_name is None
    assert str(root.elements[0]) == (
        "dalvik.system.VMStack.getThreadStackTrace(Native Method)"
    )
    assert root.cause is None


def test_from_string_unrecognized_text_is_kept() -> None:
    """Text that is not a trace is kept readable."""
    trace = StackTrace.from_string("Process crashed.")

    assert trace.class_name == "Process crashed."
    assert trace.elements == ()


def test_from_exception_follows_cause() -> None:
    """Converts a Python exception and its explicit cause."""
    try:
        try:
            raise KeyError("missing")
        except KeyError as e:
            raise RuntimeError("wrapped") from e
    except RuntimeError as e:
        trace = StackTrace.from_exception(e)

    assert trace.class_name == "RuntimeError"
    assert trace.message == "wrapped"
    assert trace.elements
    assert trace.elements[-1].method_name == "test_from_exception_follows_cause"
    assert trace.cause is not None
    assert trace.cause.class_name == "KeyError"


def test_from_exception_qualifies_non_builtin_classes() -> None:
    """Uses module-qualified names for exceptions outside builtins."""

    class CustomError(Exception):
        pass

    trace = StackTrace.from_exception(CustomError())

    assert trace.class_name.endswith("CustomError")
    assert trace.class_name.startswith(__name__)
    assert trace.message is None
    assert trace.elements == ()
