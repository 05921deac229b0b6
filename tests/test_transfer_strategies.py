import os

import paramiko
import pytest

from mocks.mock_ssh import MockSFTPClient
from ssh_uploader.config_manager import UploadSettings
from ssh_uploader.ssh_manager import ConnectionSession
from ssh_uploader.transfer_manager import Transferor
from ssh_uploader.transfer_strategies import ChunkedStreamStrategy, DirectoryTreeStrategy, WholeFilePutStrategy
from ssh_uploader.utils import TransferError, TransferFallbackError


@pytest.fixture
def archive_file(tmp_path):
    path = tmp_path / 'a.zip'
    path.write_bytes(os.urandom(300 * 1024 + 17))
    return path


class TestWholeFilePut:

    def test_uploads_and_reports_progress(self, connected_session, remote_fs, archive_file):
        progress = []
        sent = WholeFilePutStrategy().transfer(connected_session, str(archive_file), '/srv/up/a.zip',
                                               progress.append)

        assert remote_fs.files['/srv/up/a.zip'] == archive_file.read_bytes()
        assert sent == archive_file.stat().st_size
        assert progress[-1] == sent

    def test_failure_raises_transfer_error(self, connected_session, remote_fs, archive_file):
        remote_fs.fail_put = True
        with pytest.raises(TransferError):
            WholeFilePutStrategy().transfer(connected_session, str(archive_file), '/srv/up/a.zip')


class TestChunkedStream:

    def test_streams_whole_file_in_chunks(self, connected_session, remote_fs, archive_file):
        progress = []
        strategy = ChunkedStreamStrategy(chunk_size=64 * 1024, queue_depth=2, poll_interval=0.05)

        written = strategy.transfer(connected_session, str(archive_file), '/srv/up/a.zip', progress.append)

        data = archive_file.read_bytes()
        assert remote_fs.files['/srv/up/a.zip'] == data
        assert written == len(data)
        assert progress == sorted(progress)
        assert progress[-1] == len(data)
        # 300 KiB + 17 bytes in 64 KiB chunks.
        assert len(progress) == 5

    def test_writer_failure_aborts_reader(self, connected_session, remote_fs, archive_file):
        remote_fs.fail_write = True
        strategy = ChunkedStreamStrategy(chunk_size=1024, queue_depth=1, poll_interval=0.05)

        with pytest.raises(TransferFallbackError, match="Simulated write failure"):
            strategy.transfer(connected_session, str(archive_file), '/srv/up/a.zip')

    def test_reader_failure_aborts_writer(self, connected_session, tmp_path):
        strategy = ChunkedStreamStrategy(poll_interval=0.05)
        with pytest.raises(TransferFallbackError) as excinfo:
            strategy.transfer(connected_session, str(tmp_path / 'missing.zip'), '/srv/up/missing.zip')
        assert isinstance(excinfo.value.__cause__, FileNotFoundError)

    def test_empty_file(self, connected_session, remote_fs, tmp_path):
        empty = tmp_path / 'empty.zip'
        empty.write_bytes(b'')
        written = ChunkedStreamStrategy(poll_interval=0.05).transfer(connected_session, str(empty), '/srv/e.zip')
        assert written == 0
        assert remote_fs.files['/srv/e.zip'] == b''


class TestTransferor:

    def test_primary_failure_falls_back_to_chunked(self, connected_session, remote_fs, archive_file):
        remote_fs.fail_put = True
        transferor = Transferor(connected_session)

        transferor.upload_with_fallback(str(archive_file), '/srv/up/a.zip')

        assert remote_fs.put_calls == ['/srv/up/a.zip']
        assert remote_fs.open_calls == ['/srv/up/a.zip']
        assert remote_fs.files['/srv/up/a.zip'] == archive_file.read_bytes()

    def test_fallback_failure_is_fatal(self, connected_session, remote_fs, archive_file):
        remote_fs.fail_paths = {'/srv/up/a.zip'}
        with pytest.raises(TransferFallbackError):
            Transferor(connected_session).upload_with_fallback(str(archive_file), '/srv/up/a.zip')

    def test_single_file_mode_has_no_fallback(self, connected_session, remote_fs, archive_file):
        remote_fs.fail_put = True
        with pytest.raises(TransferError):
            Transferor(connected_session).upload_file(str(archive_file), '/srv/up/a.zip')
        assert remote_fs.open_calls == []

    def test_fallback_streams_over_a_fresh_channel(self, patched_ssh, ssh_client, remote_fs, credentials,
                                                   archive_file):
        broken = MockSFTPClient(fail_put=True, fail_write=True)
        opened = iter([broken])
        ssh_client.open_sftp = lambda: next(opened, remote_fs)

        with ConnectionSession(connect_retries=1, retry_delay=0) as session:
            session.connect(credentials)
            Transferor(session).upload_with_fallback(str(archive_file), '/srv/up/a.zip')

        assert broken.put_calls == ['/srv/up/a.zip']
        assert broken.open_calls == []
        assert remote_fs.files['/srv/up/a.zip'] == archive_file.read_bytes()

    def test_concurrency_setting_is_capped(self, connected_session):
        transferor = Transferor(connected_session, UploadSettings(max_concurrent_uploads=8))
        assert transferor.tree.max_workers == 4


class TestDirectoryTree:

    @pytest.fixture
    def photos(self, tmp_path):
        root = tmp_path / 'photos'
        (root / 'sub').mkdir(parents=True)
        (root / 'empty').mkdir()
        (root / '.git').mkdir()
        (root / 'a.jpg').write_bytes(b'a' * 300)
        (root / 'sub' / 'b.jpg').write_bytes(b'b' * 700)
        (root / '.git' / 'config').write_text('[core]\n')
        return root

    def test_tree_is_recreated_under_directory_name(self, connected_session, remote_fs, photos):
        done = []
        target = DirectoryTreeStrategy().transfer(connected_session, str(photos), '/srv/up',
                                                  lambda path, size: done.append(size))

        assert target == '/srv/up/photos'
        assert remote_fs.files['/srv/up/photos/a.jpg'] == b'a' * 300
        assert remote_fs.files['/srv/up/photos/sub/b.jpg'] == b'b' * 700
        assert '/srv/up/photos/empty' in remote_fs.dirs
        assert not any('.git' in path for path in list(remote_fs.files) + list(remote_fs.dirs))
        assert sorted(done) == [300, 700]

    def test_trailing_separator_keeps_directory_name(self, connected_session, remote_fs, photos):
        target = DirectoryTreeStrategy().transfer(connected_session, str(photos) + os.sep, '/srv/up')
        assert target == '/srv/up/photos'

    def test_failed_files_are_named(self, connected_session, remote_fs, photos):
        remote_fs.fail_paths = {'/srv/up/photos/sub/b.jpg'}
        done = []
        with pytest.raises(TransferError, match=r"1 of 2 files failed.*b\.jpg"):
            DirectoryTreeStrategy(max_workers=2).transfer(connected_session, str(photos), '/srv/up',
                                                          lambda path, size: done.append(size))
        assert done == [300]

    def test_dropped_connection_while_creating_tree(self, connected_session, remote_fs, photos, monkeypatch):
        def dropped(path):
            raise paramiko.SSHException("Server connection dropped")

        monkeypatch.setattr(remote_fs, 'stat', dropped)
        with pytest.raises(TransferError, match="Failed to create remote directory tree"):
            DirectoryTreeStrategy().transfer(connected_session, str(photos), '/srv/up')

    def test_worker_count_never_exceeds_four(self):
        assert DirectoryTreeStrategy(max_workers=16).max_workers == 4
        assert DirectoryTreeStrategy(max_workers=0).max_workers == 1
