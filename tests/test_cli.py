from unittest.mock import patch

import pytest

from ssh_uploader import __version__
from ssh_uploader.cli import main
from ssh_uploader.models import BatchResult, UploadResult


@pytest.fixture
def config_path(tmp_path):
    return str(tmp_path / 'cfg' / 'config.ini')


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch('ssh_uploader.cli.setup_logging') as mock_setup, \
            patch('ssh_uploader.cli._add_console_handler'):
        yield mock_setup


@pytest.fixture
def photos(tmp_path):
    root = tmp_path / 'photos'
    root.mkdir()
    (root / 'a.jpg').write_bytes(b'a')
    return root


def test_version(capsys):
    assert main(['--version']) == 0
    assert __version__ in capsys.readouterr().out


def test_check_config_creates_and_validates(config_path, capsys):
    assert main(['--config', config_path, '--check-config']) == 0
    assert 'SUCCESS' in capsys.readouterr().out


@patch('ssh_uploader.cli.estimate_and_upload', return_value=UploadResult(True, 'Upload succeeded'))
def test_single_path_uses_single_upload(mock_upload, config_path, photos):
    code = main([str(photos), '--host', 'example.com', '--user', 'alice', '--remote-dir', '/srv/up',
                 '--password', 'pw', '--config', config_path, '--simple'])

    assert code == 0
    args, kwargs = mock_upload.call_args
    assert args[0] == str(photos)
    assert args[1] == '/srv/up'
    credentials = args[2]
    assert (credentials.host, credentials.username, credentials.password, credentials.port) == \
        ('example.com', 'alice', 'pw', 22)
    assert kwargs['settings'].compression_level == 6


@patch('ssh_uploader.cli.upload_batch_archived')
def test_multiple_paths_use_batch_mode(mock_batch, config_path, tmp_path, monkeypatch):
    monkeypatch.setenv('SSH_UPLOADER_PASSWORD', 'from-env')
    a, b = tmp_path / 'a', tmp_path / 'b'
    a.mkdir()
    b.mkdir()
    mock_batch.return_value = BatchResult(total_units=2, successful_units=['a', 'b'])

    code = main([str(a), str(b), '--host', 'example.com', '--user', 'alice', '--remote-dir', '/srv/up',
                 '--port', '2222', '--config', config_path, '--simple'])

    assert code == 0
    args, _ = mock_batch.call_args
    assert args[0] == [str(a), str(b)]
    assert args[2].password == 'from-env'
    assert args[2].port == 2222


@patch('ssh_uploader.cli.upload_batch_archived')
def test_failed_batch_returns_error_code(mock_batch, config_path, photos):
    mock_batch.return_value = BatchResult(total_units=1, aborted='Could not connect')
    code = main([str(photos), '--archive', '--host', 'h', '--user', 'u', '--remote-dir', '/srv',
                 '--password', 'pw', '--config', config_path, '--simple'])
    assert code == 1


@patch('ssh_uploader.cli.estimate_and_upload')
def test_missing_local_path_is_rejected(mock_upload, config_path, tmp_path):
    code = main([str(tmp_path / 'nope'), '--host', 'h', '--user', 'u', '--remote-dir', '/srv',
                 '--password', 'pw', '--config', config_path, '--simple'])
    assert code == 1
    mock_upload.assert_not_called()


@patch('ssh_uploader.cli.upload_batch_archived')
def test_archive_mode_rejects_files(mock_batch, config_path, tmp_path):
    single = tmp_path / 'file.txt'
    single.write_text('x')
    code = main([str(single), '--archive', '--host', 'h', '--user', 'u', '--remote-dir', '/srv',
                 '--password', 'pw', '--config', config_path, '--simple'])
    assert code == 1
    mock_batch.assert_not_called()


def test_missing_required_arguments_exit(config_path):
    with pytest.raises(SystemExit) as excinfo:
        main(['--config', config_path, '--simple'])
    assert excinfo.value.code == 2


@patch('ssh_uploader.cli.getpass.getpass', return_value='typed')
@patch('ssh_uploader.cli.estimate_and_upload', return_value=UploadResult(True, 'ok'))
def test_password_prompt_when_not_supplied(mock_upload, mock_getpass, config_path, photos, monkeypatch):
    monkeypatch.delenv('SSH_UPLOADER_PASSWORD', raising=False)
    main([str(photos), '--host', 'h', '--user', 'u', '--remote-dir', '/srv', '--config', config_path, '--simple'])
    mock_getpass.assert_called_once()
    assert mock_upload.call_args[0][2].password == 'typed'


@patch('ssh_uploader.cli._list_remote')
@patch('ssh_uploader.cli.estimate_and_upload', return_value=UploadResult(True, 'ok'))
def test_list_remote_after_success(mock_upload, mock_list, config_path, photos):
    main([str(photos), '--host', 'h', '--user', 'u', '--remote-dir', '/srv', '--password', 'pw',
          '--config', config_path, '--simple', '--list-remote'])
    mock_list.assert_called_once()
    assert mock_list.call_args[0][1] == '/srv'
