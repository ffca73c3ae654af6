"""
tests/unit/test_recovery.py — RetryPolicy + result classification
"""

from __future__ import annotations

import pytest

from forgepilot.agent.recovery import (
    GiveUp,
    Retry,
    RetryPolicy,
    failure_indicator,
    is_recoverable_output,
)


class TestRetryPolicy:
    def test_allows_retry_until_exhausted(self):
        policy = RetryPolicy(max_retries=2)
        decision = Retry(new_params={"x": 1})
        assert policy.allows(decision)
        assert policy.consume() == 1
        assert policy.allows(decision)
        assert policy.consume() == 2
        assert policy.exhausted
        assert not policy.allows(decision)
        assert policy.remaining == 0

    def test_give_up_never_allowed(self):
        assert not RetryPolicy(max_retries=5).allows(GiveUp(reason="no"))

    def test_zero_budget(self):
        policy = RetryPolicy(max_retries=0)
        assert policy.exhausted
        assert not policy.allows(Retry())

    def test_reset(self):
        policy = RetryPolicy(max_retries=1)
        policy.consume()
        policy.reset()
        assert policy.attempts == 0
        assert policy.remaining == 1


class TestClassification:
    @pytest.mark.parametrize("text", [
        "Error: ENOENT: no such file or directory",
        "connect ECONNREFUSED 127.0.0.1:3000",
        "Error: listen EADDRINUSE :::8080",
        "request TIMEOUT after 30s",
        "getaddrinfo EAI_AGAIN registry.npmjs.org",
        "socket ETIMEDOUT",
    ])
    def test_recoverable(self, text):
        assert is_recoverable_output(text)

    def test_not_recoverable(self):
        assert not is_recoverable_output("SyntaxError: Unexpected token }")

    def test_success_result_has_no_failure(self):
        assert failure_indicator({"output": "ok", "exit_code": 0, "error": None}) is None

    def test_non_dict_result_has_no_failure(self):
        assert failure_indicator("done") is None
        assert failure_indicator(None) is None

    def test_non_zero_exit_code(self):
        text = failure_indicator({"exit_code": 1, "output": "npm ERR! ENOENT"})
        assert "ENOENT" in text

    def test_camel_case_exit_code(self):
        assert failure_indicator({"exitCode": 2}) == "exit code 2"

    def test_error_field(self):
        assert failure_indicator({"error": "timeout: command exceeded 5 seconds"}).startswith("timeout")

    def test_bool_exit_code_ignored(self):
        assert failure_indicator({"exit_code": True}) is None
