"""Parsing of ``logcat -v long`` output and per-test partitioning."""

import logging
import re
from collections.abc import Iterable, Mapping, Sequence

from fleet_test_runner.models.device import DeviceLogMessage, DeviceTest, LogLevel

log = logging.getLogger(__name__)

LOGCAT_DUMP_COMMAND = "logcat -d -v long"
LOGCAT_CLEAR_COMMAND = "logcat -c"
TEST_RUNNER_TAG = "TestRunner"

# e.g. "[ 01-02 03:04:05.678  1234: 0x4d2 I/TestRunner ]"; the tag keeps
# trailing padding, and the fraction of a second has any number of digits.
LOG_HEADER = re.compile(
    r"^\[\s(\d\d-\d\d\s\d\d:\d\d:\d\d\.\d+)\s+(\d*):\s*(\S+)\s([VDIWEAF])/(.*)]$"
)
TEST_STARTED = re.compile(r"started: ([^(]+)\(([^)]+)\)")
TEST_FINISHED = re.compile(r"finished: [^(]+\([^)]+\)")


def parse_thread_id(raw: str) -> int:
    """Decode a thread id printed in decimal or hex, or -1 if unreadable."""
    raw = raw.strip()
    try:
        return int(raw, 16) if raw.lower().startswith("0x") else int(raw)
    except ValueError:
        return -1


def parse_logcat(lines: Iterable[str]) -> Sequence[DeviceLogMessage]:
    """Parse logcat long-format output into messages.

    Each header line is followed by one or more message lines; every
    non-empty message line becomes one message carrying the last header.
    Message lines seen before any header are dropped.

    Args:
        lines: Raw output lines

    Returns:
        Messages in output order

    """
    messages: list[DeviceLogMessage] = []
    header: tuple[str, int, int, LogLevel, str] | None = None

    for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            continue

        if match := LOG_HEADER.match(line):
            time, pid, tid, level, tag = match.groups()
            header = (
                time,
                int(pid) if pid else -1,
                parse_thread_id(tid),
                LogLevel.from_letter(level),
                tag.strip(),
            )
            continue

        if header is None:
            log.debug("Skipping log line without header: %s", line)
            continue

        time, pid, tid, level, tag = header
        messages.append(
            DeviceLogMessage(
                level=level, pid=pid, tid=tid, tag=tag, time=time, message=line
            )
        )

    return messages


def partition_by_test(
    messages: Iterable[DeviceLogMessage],
) -> Mapping[DeviceTest, Sequence[DeviceLogMessage]]:
    """Group messages by the test that was running when they were logged.

    A test's window opens on the test runner's ``started: method(class)``
    message and closes on the matching ``finished:`` message. Only messages
    from the process that opened the window are collected.

    Args:
        messages: Parsed messages in output order

    Returns:
        Messages per test, each list starting with the ``started:`` marker

    """
    logs: dict[DeviceTest, list[DeviceLogMessage]] = {}
    current: list[DeviceLogMessage] | None = None
    pid: int | None = None

    for message in messages:
        if current is None:
            match = TEST_STARTED.fullmatch(message.message)
            if match and message.tag == TEST_RUNNER_TAG:
                test = DeviceTest(class_name=match.group(2), method_name=match.group(1))
                current = logs.setdefault(test, [])
                current.append(message)
                pid = message.pid
            continue

        if message.pid == pid:
            current.append(message)

        if (
            message.pid == pid
            and message.tag == TEST_RUNNER_TAG
            and TEST_FINISHED.fullmatch(message.message)
        ):
            current = None
            pid = None

    return logs
