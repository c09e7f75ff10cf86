"""Tests for settings, the exception hierarchy and ChainLogger."""
from __future__ import annotations

import json
import logging

import pytest
from pydantic import ValidationError

from gasless_chain.config import GaslessSettings, LoggingConfig, get_settings, set_settings
from gasless_chain.exceptions import (
    AmbiguousOutcome,
    DirectSendFailed,
    ErrorKind,
    ExecutionError,
    GaslessChainError,
    SubmissionFailed,
    UnsupportedNetwork,
)
from gasless_chain.logging_utils import ChainLogger, OperationType, mask_address, mask_url


class TestSettings:
    def test_defaults(self):
        settings = GaslessSettings(_env_file=None)

        assert settings.gasless_enabled
        assert settings.sponsorship_mode == "SPONSORED"
        assert settings.sponsorship_max_attempts == 2

    def test_sponsorship_attempts_bounded(self):
        with pytest.raises(ValidationError):
            GaslessSettings(_env_file=None, sponsorship_max_attempts=3)
        with pytest.raises(ValidationError):
            GaslessSettings(_env_file=None, sponsorship_max_attempts=0)

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("GASLESS_GASLESS_ENABLED", "false")
        monkeypatch.setenv("GASLESS_BUNDLER_API_KEY", "abc")
        monkeypatch.setenv("GASLESS_LOGGING__MASK_ADDRESSES", "true")

        settings = GaslessSettings(_env_file=None)

        assert not settings.gasless_enabled
        assert settings.bundler_api_key == "abc"
        assert settings.logging.mask_addresses

    def test_set_settings_overrides_global(self, settings):
        assert get_settings() is settings

        set_settings(None)
        assert get_settings() is not settings


class TestExceptions:
    def test_to_dict(self):
        error = GaslessChainError("boom", details={"chain_id": 137})

        assert error.to_dict() == {
            "error": "GASLESS_CHAIN_ERROR",
            "message": "boom",
            "details": {"chain_id": 137},
        }

    def test_execution_errors_carry_kind(self):
        error = SubmissionFailed("rejected")

        assert isinstance(error, ExecutionError)
        assert error.kind is ErrorKind.SUBMISSION_FAILED
        assert error.error_code == "SubmissionFailed"
        assert DirectSendFailed("x").kind is ErrorKind.DIRECT_SEND_FAILED

    def test_ambiguous_outcome_keeps_hash(self):
        error = AmbiguousOutcome("unknown", user_op_hash="0xabc")

        assert error.user_op_hash == "0xabc"
        assert error.details == {"user_op_hash": "0xabc"}
        assert error.kind is ErrorKind.AMBIGUOUS_OUTCOME

    def test_unsupported_network(self):
        error = UnsupportedNetwork(5)

        assert error.chain_id == 5
        assert error.to_dict()["details"] == {"chain_id": 5}


class TestChainLogger:
    def test_mask_helpers(self):
        assert mask_address("0x1111111111111111111111111111111111111111") == "0x1111...1111"
        assert mask_address("0x12") == "0x12"
        assert mask_address(None) is None
        assert mask_url("https://bundler.test/137?apiKey=secret") == "https://bundler.test/137?<params_masked>"

    def test_audit_log_written_to_file(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        chain_logger = ChainLogger(config=LoggingConfig(audit_log_path=str(path), mask_addresses=True))

        chain_logger.log_transaction_submitted(
            "0xhash", 137, "0x1111111111111111111111111111111111111111", sponsored=False, call_count=1,
        )
        chain_logger.log_transaction_confirmed("0xhash", 137, 100, 21000, sponsored=False)

        entries = [json.loads(line) for line in path.read_text().splitlines()]
        assert [e["event_type"] for e in entries] == ["transaction_submitted", "transaction_confirmed"]
        assert entries[0]["data"]["from_address"] == "0x1111...1111"

    def test_audit_disabled(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        chain_logger = ChainLogger(config=LoggingConfig(audit_log_enabled=False, audit_log_path=str(path)))

        chain_logger.log_transaction_failed("0xhash", 137, "reverted", "DirectSendFailed")

        assert not path.exists()

    @pytest.mark.asyncio
    async def test_operation_context_records_failure(self, caplog):
        chain_logger = ChainLogger("gasless_chain.test", LoggingConfig(audit_log_enabled=False))

        with caplog.at_level(logging.DEBUG, logger="gasless_chain.test"):
            with pytest.raises(RuntimeError):
                async with chain_logger.operation_context(OperationType.SPONSORSHIP, 137, attempt=1) as ctx:
                    raise RuntimeError("declined")

        assert not ctx.success
        assert ctx.error == "declined"
        assert ctx.duration_ms is not None
        assert ctx.metadata == {"attempt": 1}
        assert any("success=False" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_operation_context_success(self):
        chain_logger = ChainLogger("gasless_chain.test", LoggingConfig(audit_log_enabled=False))

        async with chain_logger.operation_context(OperationType.GAS_ESTIMATION, 1) as ctx:
            pass

        assert ctx.success
        assert ctx.to_dict()["operation_type"] == "gas_estimation"
