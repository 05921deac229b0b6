from unittest.mock import patch

import pytest

from mocks.mock_ssh import MockSFTPClient, MockSSHClient
from ssh_uploader.config_manager import UploadSettings
from ssh_uploader.models import ConnectionCredentials
from ssh_uploader.ssh_manager import ConnectionSession


@pytest.fixture
def credentials():
    return ConnectionCredentials(host='upload.example.com', username='alice', password='s3cret')


@pytest.fixture
def remote_fs():
    return MockSFTPClient()


@pytest.fixture
def ssh_client(remote_fs):
    return MockSSHClient(remote_fs)


@pytest.fixture
def patched_ssh(ssh_client):
    """Makes every `paramiko.SSHClient()` in the pipeline return `ssh_client`."""
    with patch('ssh_uploader.ssh_manager.paramiko.SSHClient', return_value=ssh_client) as mock_cls:
        yield mock_cls


@pytest.fixture
def connected_session(patched_ssh, credentials):
    session = ConnectionSession(connect_retries=1, retry_delay=0)
    session.connect(credentials)
    yield session
    session.dispose()


@pytest.fixture
def settings(tmp_path):
    work_dir = tmp_path / 'work'
    work_dir.mkdir()
    return UploadSettings(connect_retries=1, retry_delay=0, temp_dir=str(work_dir))
