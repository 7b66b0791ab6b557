"""Tests for the sync layer's logger helpers."""

import logging

import pytest

from exam_sync_storage.logging_utils import StorageLoggerAdapter, get_storage_logger


class TestStorageLoggers:
    def test_storage_logger_name(self):
        assert get_storage_logger("sync").name == "exam_sync_storage.sync"

    def test_adapter_tags_device(self, caplog: pytest.LogCaptureFixture):
        logger = get_storage_logger("test-adapter")
        adapter = StorageLoggerAdapter(logger, "lab-pc-07")

        with caplog.at_level(logging.INFO, logger=logger.name):
            adapter.info("Sync store started")

        record = caplog.records[-1]
        assert record.device_id == "lab-pc-07"
        assert record.getMessage() == "[lab-pc-07] Sync store started"

    def test_operation_adapter_adds_op_context(self, caplog: pytest.LogCaptureFixture):
        logger = get_storage_logger("test-adapter")
        adapter = StorageLoggerAdapter(logger, "lab-pc-07").for_operation(
            "0123456789abcdef", "questions/q1"
        )

        with caplog.at_level(logging.WARNING, logger=logger.name):
            adapter.warning("Replay failed")

        record = caplog.records[-1]
        assert record.device_id == "lab-pc-07"
        assert record.op_id == "0123456789abcdef"
        assert record.path == "questions/q1"
        assert record.getMessage() == "[lab-pc-07 op=01234567] Replay failed"

    def test_per_call_extra_is_merged(self, caplog: pytest.LogCaptureFixture):
        """Test extra passed per call is merged with the adapter context."""
        logger = get_storage_logger("test-adapter")
        adapter = StorageLoggerAdapter(logger, "lab-pc-07")

        with caplog.at_level(logging.INFO, logger=logger.name):
            adapter.info("Remapped", extra={"op_id": "abc"})

        assert caplog.records[-1].op_id == "abc"
        assert caplog.records[-1].getMessage() == "[lab-pc-07 op=abc] Remapped"
