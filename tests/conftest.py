import sys
from pathlib import Path

import pytest

from webchat.config import WebChatSettings


FAKE_WORKER = str(Path(__file__).resolve().parent / "fake_worker.py")


@pytest.fixture
def settings(tmp_path):
    return WebChatSettings(
        web_chat_dir=tmp_path / "web-chat",
        worker_command=[sys.executable, FAKE_WORKER],
        grace_period_sec=300.0,
        terminate_timeout_sec=0.5,
        keepalive_interval_sec=5.0,
    )
