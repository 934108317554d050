"""Serializable representation of exceptions and textual stack traces."""

import re
import traceback
from collections import deque
from collections.abc import Sequence
from pathlib import Path

from fleet_test_runner.models.base import Model

HEADER = re.compile(r"(?:Caused by: )?([^:]+)(?::( .*)?)?")
MORE = re.compile(r"\s*\.\.\. \d+ more")
ELEMENT = re.compile(r"\s*at (.*?)\.([^.(]+)\((?:([^:]+):(\d+)|Native Method)\)")


class StackTraceElement(Model):
    """A single frame of a stack trace."""

    class_name: str
    method_name: str
    file_name: str | None = None
    line: int = 0
    is_native: bool = False

    def __str__(self) -> str:
        if self.is_native:
            return f"{self.class_name}.{self.method_name}(Native Method)"
        return f"{self.class_name}.{self.method_name}({self.file_name}:{self.line})"


class StackTrace(Model):
    """An exception with its frames and recursive cause chain."""

    class_name: str
    message: str | None = None
    elements: tuple[StackTraceElement, ...] = ()
    cause: "StackTrace | None" = None

    def __str__(self) -> str:
        if self.class_name and self.message is not None:
            return f"{self.class_name}: {self.message}"
        return self.class_name or self.message or ""

    @classmethod
    def from_exception(cls, exception: BaseException) -> "StackTrace":
        """Convert a Python exception, following its cause/context chain."""
        return _from_exception(exception, seen=set())

    @classmethod
    def from_string(cls, trace: str) -> "StackTrace":
        """Parse a textual stack trace as reported by an instrumentation run.

        Lines are consumed bottom-up: runs of frame lines are collected and
        the message lines above them form the header of that trace. Every
        earlier header starts a new trace whose cause is the one below it.
        """
        lines = trace.replace("\r\n", "\n").split("\n")
        while lines and not lines[-1]:
            lines.pop()

        last: StackTrace | None = None
        message_parts: deque[str] = deque()
        elements: deque[StackTraceElement] = deque()
        matching_elements = True
        for part in reversed(lines):
            element_match = ELEMENT.fullmatch(part)
            if element_match or MORE.fullmatch(part):
                if not matching_elements:
                    last = _accept_trace(message_parts, elements, last)
                    message_parts = deque()
                    elements = deque()
                matching_elements = True

                if element_match:
                    class_name, method_name, file_name, line = element_match.groups()
                    elements.appendleft(
                        StackTraceElement(
                            class_name=class_name,
                            method_name=method_name,
                            file_name=file_name,
                            line=int(line) if line else 0,
                            is_native=file_name is None,
                        )
                    )
            else:
                matching_elements = False
                message_parts.appendleft(part)

        return _accept_trace(message_parts, elements, last)


def _accept_trace(
    message_parts: deque[str],
    elements: Sequence[StackTraceElement],
    cause: StackTrace | None,
) -> StackTrace:
    header = message_parts.popleft() if message_parts else ""
    header_match = HEADER.fullmatch(header)
    if header_match is None:
        # Unexpected format; keep the text so the result stays readable.
        return StackTrace(
            class_name="",
            message=header or None,
            elements=tuple(elements),
            cause=cause,
        )

    class_name, message_part = header_match.groups()
    if message_part:
        message_parts.appendleft(message_part.strip())
    if message_parts and not message_parts[-1]:
        message_parts.pop()

    return StackTrace(
        class_name=class_name,
        message="\n".join(message_parts) or None,
        elements=tuple(elements),
        cause=cause,
    )


def _from_exception(exception: BaseException, seen: set[int]) -> StackTrace:
    seen.add(id(exception))

    cause = exception.__cause__
    if cause is None and not exception.__suppress_context__:
        cause = exception.__context__

    exception_type = type(exception)
    if exception_type.__module__ == "builtins":
        class_name = exception_type.__qualname__
    else:
        class_name = f"{exception_type.__module__}.{exception_type.__qualname__}"

    elements = tuple(
        StackTraceElement(
            class_name=Path(frame.filename).stem,
            method_name=frame.name,
            file_name=Path(frame.filename).name,
            line=frame.lineno or 0,
        )
        for frame in traceback.extract_tb(exception.__traceback__)
    )

    return StackTrace(
        class_name=class_name,
        message=str(exception) or None,
        elements=elements,
        cause=(
            _from_exception(cause, seen)
            if cause is not None and id(cause) not in seen
            else None
        ),
    )
