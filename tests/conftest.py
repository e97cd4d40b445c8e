"""Shared pytest fixtures."""

import pytest

from chatwarden.storage import FileCredentialStore

from helpers import RecordingNotifier, SleepRecorder


@pytest.fixture
def store(tmp_path):
    return FileCredentialStore(str(tmp_path / "sessions"))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()
