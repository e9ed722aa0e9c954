import logging
import os
from collections import namedtuple
from unittest.mock import MagicMock

import psycopg2
import pytest

from loadharness.config import DatabaseLocator
from loadharness.controller import CancellationSignal, RunContext, StopTrigger
from loadharness.errors import ConnectionFailed, FileCreateFailed, InsufficientSpace
from loadharness.provisioner import GB, DatabaseProvisioner, ScratchFileProvisioner

DiskUsage = namedtuple('DiskUsage', 'total used free percent')
MB = 1024 * 1024


def usage_with_free(free):
    calls = []

    def disk_usage(path):
        calls.append(path)
        return DiskUsage(free * 2, free, free, 50.0)
    disk_usage.calls = calls
    return disk_usage


@pytest.fixture
def context(disk_config):
    return RunContext(disk_config)


class TestSpaceGuard:

    def test_insufficient_space_fails_before_any_file(self, tmp_path, context):
        directory = tmp_path / 'scratch'
        provisioner = ScratchFileProvisioner(str(directory), 1 * GB, 4, disk_usage=usage_with_free(2 * GB))

        with pytest.raises(InsufficientSpace):
            provisioner.prepare(context)

        assert not directory.exists()
        assert context.scratch_resources == []
        assert context.files_created == 0

    def test_inside_buffer_requires_confirmation(self, tmp_path, context):
        provisioner = ScratchFileProvisioner(str(tmp_path / 'scratch'), MB, 4,
                                             disk_usage=usage_with_free(int(4.4 * MB)))
        with pytest.raises(InsufficientSpace):
            provisioner.prepare(context)
        assert not (tmp_path / 'scratch').exists()

    def test_inside_buffer_declined(self, tmp_path, context):
        messages = []

        def decline(message):
            messages.append(message)
            return False

        provisioner = ScratchFileProvisioner(str(tmp_path / 'scratch'), MB, 4, confirm=decline,
                                             disk_usage=usage_with_free(int(4.4 * MB)))
        with pytest.raises(InsufficientSpace):
            provisioner.prepare(context)
        assert len(messages) == 1
        assert '20%' in messages[0]

    def test_inside_buffer_confirmed_proceeds(self, tmp_path, context):
        provisioner = ScratchFileProvisioner(str(tmp_path / 'scratch'), MB, 4, confirm=lambda m: True,
                                             disk_usage=usage_with_free(int(4.4 * MB)))
        provisioner.prepare(context)
        assert context.files_created == 4

    def test_enough_space_does_not_ask(self, tmp_path, context):
        def never(message):
            raise AssertionError("não deveria pedir confirmação")

        provisioner = ScratchFileProvisioner(str(tmp_path / 'scratch'), MB, 2, confirm=never,
                                             disk_usage=usage_with_free(10 * MB))
        provisioner.prepare(context)
        assert context.files_created == 2

    def test_skip_space_check(self, tmp_path, context):
        def never(path):
            raise AssertionError("não deveria medir o disco")

        provisioner = ScratchFileProvisioner(str(tmp_path / 'scratch'), MB, 1,
                                             skip_space_check=True, disk_usage=never)
        provisioner.prepare(context)
        assert context.files_created == 1

    def test_measures_nearest_existing_ancestor(self, tmp_path):
        disk_usage = usage_with_free(10 * GB)
        provisioner = ScratchFileProvisioner(str(tmp_path / 'a' / 'b'), MB, 1, disk_usage=disk_usage)

        assert provisioner.available_bytes() == 10 * GB
        assert disk_usage.calls == [str(tmp_path)]

    def test_unreadable_volume_is_a_provisioning_failure(self, tmp_path, context):
        def denied(path):
            raise PermissionError(13, "Permission denied", path)

        directory = tmp_path / 'scratch'
        provisioner = ScratchFileProvisioner(str(directory), MB, 2, disk_usage=denied)

        with pytest.raises(InsufficientSpace):
            provisioner.prepare(context)

        assert not directory.exists()
        assert context.files_created == 0


class TestScratchFiles:

    def test_creates_one_fixed_size_file_per_worker(self, tmp_path, context):
        size = MB + MB // 2 + 3
        directory = tmp_path / 'scratch'
        provisioner = ScratchFileProvisioner(str(directory), size, 3, disk_usage=usage_with_free(GB))

        provisioner.prepare(context)

        paths = [provisioner.scratch_path(i) for i in range(3)]
        assert [r.path for r in context.scratch_resources] == paths
        for path in paths:
            assert os.path.getsize(path) == size
        assert context.files_created == 3

    def test_content_is_not_compressible_zeros(self, tmp_path, context):
        provisioner = ScratchFileProvisioner(str(tmp_path), MB, 1, disk_usage=usage_with_free(GB))
        provisioner.prepare(context)
        with open(provisioner.scratch_path(0), 'rb') as f:
            data = f.read()
        assert data != b'\x00' * MB
        assert len(set(data)) > 200

    def test_failure_removes_partial_files(self, tmp_path, context):
        class FailingOnSecond(ScratchFileProvisioner):
            written = 0

            def _write_random_file(self, path, cancel):
                self.written += 1
                if self.written == 2:
                    with open(path, 'wb') as f:
                        f.write(b'parcial')
                    raise OSError("disco cheio")
                super()._write_random_file(path, cancel)

        directory = tmp_path / 'scratch'
        provisioner = FailingOnSecond(str(directory), MB, 3, disk_usage=usage_with_free(GB))

        with pytest.raises(FileCreateFailed):
            provisioner.prepare(context)

        assert list(directory.iterdir()) == []
        assert context.scratch_resources == []

    def test_cancel_during_creation_aborts_and_cleans(self, tmp_path, context):
        cancel = CancellationSignal()
        cancel.cancel(StopTrigger.INTERRUPT_RECEIVED)
        directory = tmp_path / 'scratch'
        provisioner = ScratchFileProvisioner(str(directory), MB, 2, disk_usage=usage_with_free(GB))

        with pytest.raises(FileCreateFailed):
            provisioner.prepare(context, cancel)

        assert list(directory.iterdir()) == []

    def test_directory_creation_failure(self, tmp_path, context):
        blocker = tmp_path / 'arquivo'
        blocker.write_text('não é diretório')
        provisioner = ScratchFileProvisioner(str(blocker / 'scratch'), MB, 1, skip_space_check=True)

        with pytest.raises(FileCreateFailed):
            provisioner.prepare(context)

    def test_release_continues_past_failures(self, tmp_path, context, monkeypatch, caplog):
        provisioner = ScratchFileProvisioner(str(tmp_path), MB, 3, disk_usage=usage_with_free(GB))
        provisioner.prepare(context)
        stuck = provisioner.scratch_path(0)
        os.remove(provisioner.scratch_path(1))
        real_remove = os.remove

        def remove(path):
            if path == stuck:
                raise PermissionError("em uso")
            real_remove(path)

        monkeypatch.setattr('loadharness.provisioner.os.remove', remove)
        with caplog.at_level(logging.WARNING):
            removed = provisioner.release(context)

        assert removed == 1
        assert not os.path.exists(provisioner.scratch_path(2))
        assert [r.path for r in context.scratch_resources] == [stuck]
        assert 'em uso' in caplog.text

    def test_release_removes_all(self, tmp_path, context):
        provisioner = ScratchFileProvisioner(str(tmp_path / 'scratch'), MB, 2, disk_usage=usage_with_free(GB))
        provisioner.prepare(context)

        assert provisioner.release(context) == 2
        assert context.files_removed == 2
        assert list((tmp_path / 'scratch').iterdir()) == []


class TestDatabaseProvisioner:

    def test_probe_closes_connection(self, context):
        conn = MagicMock()
        cursor = conn.cursor.return_value.__enter__.return_value
        cursor.fetchone.return_value = ('PostgreSQL 16.2',)
        connect = MagicMock(return_value=conn)

        DatabaseProvisioner(DatabaseLocator(connect_timeout=3), connect=connect).prepare(context)

        assert connect.call_args.kwargs['connect_timeout'] == 3
        conn.close.assert_called_once()

    def test_connection_failure(self, context):
        connect = MagicMock(side_effect=psycopg2.OperationalError("recusada"))
        with pytest.raises(ConnectionFailed):
            DatabaseProvisioner(DatabaseLocator(), connect=connect).prepare(context)

    def test_query_failure_still_closes(self, context):
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value.execute.side_effect = psycopg2.DatabaseError("x")
        with pytest.raises(ConnectionFailed):
            DatabaseProvisioner(DatabaseLocator(), connect=MagicMock(return_value=conn)).prepare(context)
        conn.close.assert_called_once()

    def test_release_is_noop(self, context):
        assert DatabaseProvisioner(DatabaseLocator()).release(context) == 0
