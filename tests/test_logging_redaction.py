from __future__ import annotations

import io
import logging

from portal_order_agent.logging_config import RedactingFilter


def _logger_with_stream(secrets: list[str]) -> tuple[logging.Logger, io.StringIO]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(RedactingFilter(secrets))
    log = logging.getLogger(f"test_redaction_{id(stream)}")
    log.propagate = False
    log.setLevel(logging.INFO)
    log.addHandler(handler)
    return log, stream


def test_secrets_in_message_and_args_are_masked() -> None:
    log, stream = _logger_with_stream(["hunter22", "sk-live-abc"])

    log.info("login with %s failed", "hunter22")
    log.info("adaptive key sk-live-abc rejected")
    log.info("nothing secret here: %d", 42)

    out = stream.getvalue()
    assert "hunter22" not in out
    assert "sk-live-abc" not in out
    assert out.count("********") == 2
    assert "nothing secret here: 42" in out


def test_longer_secret_is_masked_whole() -> None:
    f = RedactingFilter(["abc", "abcdef"])
    assert f.redact("token=abcdef") == "token=********"


def test_short_and_empty_secrets_are_ignored() -> None:
    f = RedactingFilter(["", "ab"])
    assert f.redact("ab cd") == "ab cd"
