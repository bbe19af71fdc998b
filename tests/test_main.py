"""Tests for the process entry point and logging setup."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from unittest.mock import patch

from constraint_controller.main import JsonFormatter, main


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_extras_are_included(self) -> None:
        record = logging.LogRecord(
            "constraint_controller.reconciler",
            logging.INFO,
            __file__,
            1,
            "Handling constraint update",
            None,
            None,
        )
        record.identity = "K/a"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Handling constraint update"
        assert data["level"] == "INFO"
        assert data["identity"] == "K/a"
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data


class TestMain:
    """Tests for main()."""

    def test_configuration_error_exits_1(self) -> None:
        with patch.dict(os.environ, {}, clear=True), patch(
            "constraint_controller.main.setup_logging"
        ):
            assert asyncio.run(main()) == 1
