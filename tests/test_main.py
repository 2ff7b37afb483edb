"""
Tests for the entry point: exit codes and logging setup.
"""

import logging
import os

import pytest

import main
import publisher
from batch import BatchItem, BatchResult, ItemState
from config import (
    EXIT_BATCH_FAILED,
    EXIT_CANCELLED,
    EXIT_ERROR,
    EXIT_METADATA_FAILED,
    EXIT_OK,
    EXIT_SYNC_FAILED,
    EXIT_USAGE,
    Options,
)
from publisher import backup_path_for, staging_path_for


@pytest.fixture
def options(tmp_path):
    return Options(
        published_file_id=123,
        output_dir=str(tmp_path / "out"),
        auth_cache_path=str(tmp_path / "auth.json"),
        use_anonymous=True,
        details_interval=0,
    )


@pytest.fixture
def restore_logger():
    logger = logging.getLogger(main.LOGGER_NAME)
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


class TestSingleItem:
    @pytest.mark.asyncio
    async def test_success_syncs_into_output_dir(self, options, fake_service, fake_metadata, log, tmp_path):
        fake_metadata.add(123)
        fake_service.add_file("a.ini", b"[x]")

        code = await main.run(options, log, service=fake_service, metadata=fake_metadata)

        assert code == EXIT_OK
        assert (tmp_path / "out" / "a.ini").read_bytes() == b"[x]"
        assert fake_service.calls[-1] == "disconnect"

    @pytest.mark.asyncio
    async def test_metadata_failure(self, options, fake_service, fake_metadata, log):
        code = await main.run(options, log, service=fake_service, metadata=fake_metadata)
        assert code == EXIT_METADATA_FAILED

    @pytest.mark.asyncio
    async def test_sync_failure(self, options, fake_service, fake_metadata, log):
        fake_metadata.add(123)
        fake_service.manifest_id = 0
        code = await main.run(options, log, service=fake_service, metadata=fake_metadata)
        assert code == EXIT_SYNC_FAILED

    @pytest.mark.asyncio
    async def test_logon_failure_is_an_error(self, options, fake_service, fake_metadata, log):
        fake_metadata.add(123)
        fake_service.anonymous_ok = False
        code = await main.run(options, log, service=fake_service, metadata=fake_metadata)
        assert code == EXIT_ERROR
        assert "disconnect" in fake_service.calls


class TestBatch:
    @pytest.mark.asyncio
    async def test_batch_with_failure(self, options, fake_service, fake_metadata, log, tmp_path):
        ids = tmp_path / "ids.txt"
        ids.write_text("# list\n1\n2\n", encoding="utf-8")
        options.id_list_path = str(ids)
        fake_metadata.add(1)
        fake_service.add_file("a.txt", b"a")

        code = await main.run(options, log, service=fake_service, metadata=fake_metadata)

        assert code == EXIT_BATCH_FAILED
        assert (tmp_path / "out" / "1" / "a.txt").read_bytes() == b"a"
        assert not (tmp_path / "out" / "2").exists()

    @pytest.mark.asyncio
    async def test_batch_success(self, options, fake_service, fake_metadata, log, tmp_path):
        ids = tmp_path / "ids.txt"
        ids.write_text("1\n", encoding="utf-8")
        options.id_list_path = str(ids)
        fake_metadata.add(1)
        code = await main.run(options, log, service=fake_service, metadata=fake_metadata)
        assert code == EXIT_OK

    @pytest.mark.asyncio
    async def test_missing_list_file(self, options, fake_service, fake_metadata, log, tmp_path):
        options.id_list_path = str(tmp_path / "nope.txt")
        code = await main.run(options, log, service=fake_service, metadata=fake_metadata)
        assert code == EXIT_USAGE
        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_list_without_valid_ids(self, options, fake_service, fake_metadata, log, tmp_path):
        ids = tmp_path / "ids.txt"
        ids.write_text("# nothing\nabc\n", encoding="utf-8")
        options.id_list_path = str(ids)
        code = await main.run(options, log, service=fake_service, metadata=fake_metadata)
        assert code == EXIT_USAGE


class TestExitCodes:
    def test_cancelled_wins(self, options):
        result = BatchResult(items=[BatchItem(123, state=ItemState.DOWNLOADED)], cancelled=True)
        assert main._exit_code(options, result) == EXIT_CANCELLED

    def test_invalid_invocation(self, capsys):
        assert main.main([]) == EXIT_USAGE
        err = capsys.readouterr().err
        assert "Usage forms" in err
        assert "\"**/\" matches zero or more directories" in err


class TestConfigureLogging:
    def test_file_handler(self, tmp_path, restore_logger):
        path = tmp_path / "logs" / "run.log"
        log = main.configure_logging("debug", str(path))
        log.debug("hello %s", "file")
        for handler in log.handlers:
            handler.flush()
        assert log.level == logging.DEBUG
        assert "DEBUG hello file" in path.read_text(encoding="utf-8")

    def test_reconfigure_replaces_handlers(self, restore_logger):
        main.configure_logging("INFO")
        log = main.configure_logging("WARNING")
        assert len(log.handlers) == 1
        assert log.level == logging.WARNING


class TestFatalErrors:
    @pytest.mark.asyncio
    async def test_rollback_failure_stops_the_run(
        self, options, fake_service, fake_metadata, log, tmp_path, monkeypatch
    ):
        ids = tmp_path / "ids.txt"
        ids.write_text("1\n2\n", encoding="utf-8")
        options.id_list_path = str(ids)
        fake_metadata.add(1)
        fake_metadata.add(2)
        fake_service.add_file("a.txt", b"a")
        first = tmp_path / "out" / "1"
        first.mkdir(parents=True)
        real_rename = os.rename
        blocked = {str(staging_path_for(first)), str(backup_path_for(first))}

        def broken_rename(src, dst):
            if str(src) in blocked:
                raise OSError("device busy")
            return real_rename(src, dst)

        monkeypatch.setattr(publisher.os, "rename", broken_rename)

        code = await main.run(options, log, service=fake_service, metadata=fake_metadata)

        assert code == EXIT_ERROR
        assert not (tmp_path / "out" / "2").exists()
        assert fake_service.calls.count("get_workshop_manifest_id") == 1
        assert "disconnect" in fake_service.calls
