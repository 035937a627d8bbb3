from __future__ import annotations

from typing import List

import pytest

from autofix.utils.retry import backoff_delay, is_transient_status, looks_transient, retry_transient
from autofix.utils.text import combine_output, safe_repo_relative_path, truncate


class _Flaky(Exception):
    pass


def test_backoff_is_capped() -> None:
    assert [backoff_delay(attempt) for attempt in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


@pytest.mark.parametrize(("status", "expected"), [(429, True), (408, True), (502, True), (404, False), (None, False)])
def test_transient_statuses(status: int | None, expected: bool) -> None:
    assert is_transient_status(status) is expected


def test_looks_transient_matches_hints() -> None:
    assert looks_transient("Rate limit exceeded")
    assert not looks_transient("Bad credentials")


def test_retry_transient_stops_on_success() -> None:
    delays: List[float] = []
    outcomes = iter([_Flaky("first"), _Flaky("second"), "ok"])

    def operation() -> str:
        value = next(outcomes)
        if isinstance(value, Exception):
            raise value
        return value

    result = retry_transient(operation, is_transient=lambda error: isinstance(error, _Flaky), sleep=delays.append)

    assert result == "ok"
    assert delays == [1.0, 2.0]


def test_retry_transient_raises_permanent_errors_immediately() -> None:
    delays: List[float] = []

    def operation() -> str:
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        retry_transient(operation, is_transient=lambda error: False, sleep=delays.append)
    assert delays == []


def test_truncate_appends_marker() -> None:
    assert truncate("abcdef", 4) == "abcd\n[TRUNCATED: 2 chars]"
    assert truncate("abc", 4) == "abc"
    assert truncate(None, 4) == ""


def test_combine_output_skips_empty_streams() -> None:
    assert combine_output("out\n", "") == "out"
    assert combine_output("", "err") == "err"
    assert combine_output("out", "err") == "out\nerr"


def test_safe_repo_relative_path_rejects_escapes(tmp_path) -> None:
    assert safe_repo_relative_path(tmp_path, "src/app.py") == (tmp_path / "src" / "app.py").resolve()
    for bad in ("../x", "/etc/passwd", "  "):
        with pytest.raises(ValueError):
            safe_repo_relative_path(tmp_path, bad)
