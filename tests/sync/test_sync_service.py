"""Test sync cycles end to end."""

import asyncio
import os
import threading
from pathlib import Path
from typing import Dict
from unittest.mock import AsyncMock, patch

import pytest

from conftest import RecordingReporter
from treesync.config import SyncConfig
from treesync.sync import SyncOrchestrator
from treesync.sync.backup import RestoreReport
from treesync.sync.checks import check_not_empty
from treesync.sync.exceptions import SyncInProgressError
from treesync.sync.fetch import DirectoryFetcher
from treesync.sync.status import SyncPhase, read_status
from treesync.utils.file_utils import FileWriteError
from treesync.utils.file_utils import copy_file as real_copy_file


def write_tree(root: Path, files: Dict[str, str]) -> None:
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def read_tree(root: Path) -> Dict[str, str]:
    return {
        p.relative_to(root).as_posix(): p.read_text() for p in sorted(root.rglob("*")) if p.is_file()
    }


def failing_on_call(n: int):
    """copy_file replacement that fails on its n-th call."""
    calls = []

    def copy(source, target):
        calls.append(target)
        if len(calls) == n:
            raise FileWriteError(f"simulated failure writing {target}")
        real_copy_file(source, target)

    return copy


def held_until(release: threading.Event):
    """copy_file replacement that blocks until ``release`` is set."""

    def copy(source, target):
        release.wait(timeout=10)
        real_copy_file(source, target)

    return copy


@pytest.mark.asyncio
async def test_new_files_into_absent_live_tree(
    orchestrator: SyncOrchestrator, candidate_root: Path, live_root: Path
):
    """Every candidate file is new when the live tree does not exist yet."""
    live_root.rmdir()
    write_tree(candidate_root, {"a.txt": "alpha", "b/c.txt": "gamma"})

    outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.COMPLETED
    assert outcome.changeset.new == {"a.txt", "b/c.txt"}
    assert outcome.changeset.modified == set()
    assert outcome.changeset.deleted == set()
    assert read_tree(live_root) == {"a.txt": "alpha", "b/c.txt": "gamma"}


@pytest.mark.asyncio
async def test_mixed_changes_are_applied(
    orchestrator: SyncOrchestrator,
    reporter: RecordingReporter,
    candidate_root: Path,
    live_root: Path,
):
    write_tree(live_root, {"a.txt": "v1", "x.txt": "old", "gone/deep/y.txt": "old"})
    write_tree(candidate_root, {"a.txt": "v2", "b.txt": "new"})

    outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.COMPLETED
    assert outcome.succeeded
    assert outcome.changeset.new == {"b.txt"}
    assert outcome.changeset.modified == {"a.txt"}
    assert outcome.changeset.deleted == {"x.txt", "gone/deep/y.txt"}
    assert read_tree(live_root) == {"a.txt": "v2", "b.txt": "new"}
    # directories emptied by the deletions are pruned
    assert not (live_root / "gone").exists()
    assert live_root.exists()

    assert reporter.phases == [
        SyncPhase.INIT,
        SyncPhase.FETCHING,
        SyncPhase.VALIDATING,
        SyncPhase.COMPARING,
        SyncPhase.APPLY_STARTED,
        SyncPhase.BACKING_UP,
        SyncPhase.APPLYING,
        SyncPhase.COMPLETED,
    ]
    percents = [record.percent for record in reporter.history]
    assert percents == sorted(percents)
    assert reporter.history[-1].percent == 100


@pytest.mark.asyncio
async def test_validation_failure_cancels_cycle(
    sync_config: SyncConfig, reporter: RecordingReporter, candidate_root: Path, live_root: Path
):
    write_tree(live_root, {"a.txt": "v1", "x.txt": "keep me"})
    write_tree(candidate_root, {"a.txt": "v2", "sub/bad.txt": "broken"})
    before = read_tree(live_root)

    def reject_bad(path: Path):
        if path.name == "bad.txt":
            return False, "not acceptable"
        return True, ""

    orchestrator = SyncOrchestrator(sync_config, check=reject_bad, reporter=reporter)
    record = await orchestrator.start()

    assert record.phase == SyncPhase.CANCELLED
    assert record.percent == 100
    assert not orchestrator.in_flight

    outcome = await orchestrator.wait()
    assert outcome.phase == SyncPhase.CANCELLED
    assert outcome.succeeded
    assert outcome.failures == [("sub/bad.txt", "not acceptable")]
    assert read_tree(live_root) == before
    assert SyncPhase.COMPARING not in reporter.phases


@pytest.mark.asyncio
async def test_copy_failure_rolls_back(
    orchestrator: SyncOrchestrator,
    reporter: RecordingReporter,
    candidate_root: Path,
    live_root: Path,
):
    """A failure on the second of three modified files restores all three."""
    original = {"a.txt": "a1", "b.txt": "b1", "c.txt": "c1"}
    write_tree(live_root, original)
    write_tree(candidate_root, {"a.txt": "a2", "b.txt": "b2", "c.txt": "c2"})

    with patch("treesync.sync.apply.copy_file", side_effect=failing_on_call(2)):
        outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.RESTORED_AFTER_FAILURE
    assert not outcome.succeeded
    assert "b.txt" in outcome.message
    assert outcome.failed_path == "b.txt"
    assert read_tree(live_root) == original

    assert reporter.phases[-4:] == [
        SyncPhase.APPLYING,
        SyncPhase.FAILED,
        SyncPhase.ROLLING_BACK,
        SyncPhase.RESTORED_AFTER_FAILURE,
    ]
    failed_index = reporter.phases.index(SyncPhase.FAILED)
    assert all(record.percent == -1 for record in reporter.history[-3:])
    assert failed_index < reporter.phases.index(SyncPhase.ROLLING_BACK)

    persisted = read_status(orchestrator.config.status_path)
    assert persisted.phase == SyncPhase.RESTORED_AFTER_FAILURE
    assert persisted.percent == -1


@pytest.mark.asyncio
async def test_rollback_leaves_new_files(
    orchestrator: SyncOrchestrator, candidate_root: Path, live_root: Path
):
    write_tree(live_root, {"a.txt": "a1"})
    write_tree(candidate_root, {"a.txt": "a2", "new.txt": "fresh"})

    # copies run new files first, so the modified a.txt is the second copy
    with patch("treesync.sync.apply.copy_file", side_effect=failing_on_call(2)):
        outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.RESTORED_AFTER_FAILURE
    assert read_tree(live_root) == {"a.txt": "a1", "new.txt": "fresh"}


@pytest.mark.asyncio
async def test_incomplete_restore(
    orchestrator: SyncOrchestrator, candidate_root: Path, live_root: Path
):
    write_tree(live_root, {"a.txt": "a1", "b.txt": "b1"})
    write_tree(candidate_root, {"a.txt": "a2", "b.txt": "b2"})

    orchestrator.backup_manager.restore = AsyncMock(
        return_value=RestoreReport(restored=["a.txt"], failed={"b.txt": "permission denied"})
    )
    with patch("treesync.sync.apply.copy_file", side_effect=failing_on_call(2)):
        outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.RESTORE_INCOMPLETE
    assert "b.txt" in outcome.message
    assert read_status(orchestrator.config.status_path).phase == SyncPhase.RESTORE_INCOMPLETE


@pytest.mark.asyncio
async def test_backup_failure_leaves_live_untouched(
    orchestrator: SyncOrchestrator, candidate_root: Path, live_root: Path
):
    write_tree(live_root, {"a.txt": "a1", "x.txt": "old"})
    write_tree(candidate_root, {"a.txt": "a2"})
    before = read_tree(live_root)

    with patch(
        "treesync.sync.backup.copy_file", side_effect=FileWriteError("backup disk full")
    ):
        outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.FAILED
    assert "backup failed" in outcome.message
    assert read_tree(live_root) == before


@pytest.mark.asyncio
async def test_no_changes(
    orchestrator: SyncOrchestrator,
    reporter: RecordingReporter,
    candidate_root: Path,
    live_root: Path,
):
    write_tree(candidate_root, {"a.txt": "same"})
    write_tree(live_root, {"a.txt": "same"})

    record = await orchestrator.start()

    assert record.phase == SyncPhase.NO_CHANGES
    assert record.percent == 100
    outcome = await orchestrator.wait()
    assert outcome.changeset.is_empty
    assert SyncPhase.BACKING_UP not in reporter.phases
    assert not orchestrator.config.backup_root.exists()


@pytest.mark.asyncio
async def test_missing_candidate_fails_fetch(
    orchestrator: SyncOrchestrator, candidate_root: Path, live_root: Path
):
    candidate_root.rmdir()
    write_tree(live_root, {"a.txt": "keep"})

    outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.FAILED
    assert "fetch failed" in outcome.message
    assert read_tree(live_root) == {"a.txt": "keep"}
    record = read_status(orchestrator.config.status_path)
    assert record.percent == -1


@pytest.mark.asyncio
async def test_directory_fetcher_populates_and_discards_candidate(
    sync_config: SyncConfig, tmp_path: Path, candidate_root: Path, live_root: Path
):
    source = tmp_path / "source"
    write_tree(source, {"a.txt": "alpha", ".git/HEAD": "ref"})
    write_tree(candidate_root, {"stale.txt": "from an earlier fetch"})

    orchestrator = SyncOrchestrator(
        sync_config, check=check_not_empty, fetcher=DirectoryFetcher(source)
    )
    outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.COMPLETED
    assert read_tree(live_root) == {"a.txt": "alpha"}
    assert not candidate_root.exists()
    assert read_tree(source) == {".git/HEAD": "ref", "a.txt": "alpha"}


@pytest.mark.asyncio
async def test_fetcher_error_fails_cycle(sync_config: SyncConfig, tmp_path: Path, live_root: Path):
    orchestrator = SyncOrchestrator(
        sync_config, check=check_not_empty, fetcher=DirectoryFetcher(tmp_path / "nowhere")
    )

    outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.FAILED
    assert "does not exist" in outcome.message


@pytest.mark.asyncio
async def test_second_cycle_is_rejected_while_in_flight(
    orchestrator: SyncOrchestrator, sync_config: SyncConfig, candidate_root: Path
):
    write_tree(candidate_root, {"a.txt": "alpha"})
    release = threading.Event()

    with patch("treesync.sync.apply.copy_file", side_effect=held_until(release)):
        record = await orchestrator.start()
        assert record.phase == SyncPhase.APPLY_STARTED
        assert orchestrator.in_flight

        other = SyncOrchestrator(sync_config, check=check_not_empty)
        with pytest.raises(SyncInProgressError):
            await other.start()
        with pytest.raises(SyncInProgressError):
            await orchestrator.start()

        release.set()
        outcome = await orchestrator.wait()

    assert outcome.phase == SyncPhase.COMPLETED
    assert not orchestrator.in_flight

    # the root is free again once the cycle is terminal
    second = await other.run()
    assert second.phase == SyncPhase.NO_CHANGES


@pytest.mark.asyncio
async def test_live_trees_sharing_a_backup_root_do_not_overlap(config_home: Path, tmp_path: Path):
    shared_backup = tmp_path / "state" / "backup"
    configs = {}
    for name in ("first", "second"):
        write_tree(tmp_path / name / "live", {f"{name}.txt": "old"})
        write_tree(tmp_path / name / "candidate", {f"{name}.txt": "new"})
        configs[name] = SyncConfig(
            candidate_root=tmp_path / name / "candidate",
            live_root=tmp_path / name / "live",
            backup_root=shared_backup,
            status_path=tmp_path / name / "status.json",
            log_file=None,
        )
    first = SyncOrchestrator(configs["first"], check=check_not_empty)
    second = SyncOrchestrator(configs["second"], check=check_not_empty)
    release = threading.Event()

    with patch("treesync.sync.apply.copy_file", side_effect=held_until(release)):
        await first.start()
        with pytest.raises(SyncInProgressError, match="backup"):
            await second.start()
        release.set()
        outcome = await first.wait()

    assert outcome.phase == SyncPhase.COMPLETED
    assert read_tree(tmp_path / "second" / "live") == {"second.txt": "old"}

    # once the first cycle is over the backup root can be reused
    assert (await second.run()).phase == SyncPhase.COMPLETED
    assert read_tree(tmp_path / "first" / "live") == {"first.txt": "new"}
    assert read_tree(tmp_path / "second" / "live") == {"second.txt": "new"}


@pytest.mark.asyncio
async def test_live_trees_sharing_a_status_file_do_not_overlap(
    sync_config: SyncConfig, tmp_path: Path, candidate_root: Path
):
    write_tree(candidate_root, {"a.txt": "alpha"})
    write_tree(tmp_path / "other_candidate", {"b.txt": "beta"})
    other_config = SyncConfig(
        candidate_root=tmp_path / "other_candidate",
        live_root=tmp_path / "other_live",
        backup_root=tmp_path / "other_backup",
        status_path=sync_config.status_path,
        log_file=None,
    )
    orchestrator = SyncOrchestrator(sync_config, check=check_not_empty)
    release = threading.Event()

    with patch("treesync.sync.apply.copy_file", side_effect=held_until(release)):
        await orchestrator.start()
        with pytest.raises(SyncInProgressError, match="status.json"):
            await SyncOrchestrator(other_config, check=check_not_empty).start()
        release.set()
        await orchestrator.wait()


@pytest.mark.asyncio
async def test_live_cycle_in_other_process_blocks_start(
    orchestrator: SyncOrchestrator, candidate_root: Path
):
    write_tree(candidate_root, {"a.txt": "alpha"})
    reporter = orchestrator.reporter
    reporter.report(SyncPhase.APPLYING, 50, cycle_id="elsewhere")
    record = reporter.current.model_copy(update={"pid": os.getppid()})
    reporter.write(record)

    with pytest.raises(SyncInProgressError, match="elsewhere"):
        await orchestrator.start()


@pytest.mark.asyncio
async def test_stale_record_from_dead_process_is_ignored(
    orchestrator: SyncOrchestrator, candidate_root: Path, live_root: Path
):
    write_tree(candidate_root, {"a.txt": "alpha"})
    reporter = orchestrator.reporter
    reporter.report(SyncPhase.APPLYING, 50, cycle_id="crashed")
    reporter.write(reporter.current.model_copy(update={"pid": 999999}))

    with patch("treesync.sync.sync_service.is_process_alive", return_value=False):
        outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.COMPLETED
    assert read_tree(live_root) == {"a.txt": "alpha"}


@pytest.mark.asyncio
async def test_cancel_rolls_back(
    orchestrator: SyncOrchestrator, candidate_root: Path, live_root: Path
):
    write_tree(live_root, {"a.txt": "a1"})
    write_tree(candidate_root, {"a.txt": "a2", "b.txt": "b2"})
    release = threading.Event()

    # hold the backup so the cancel lands before the first copy
    with patch("treesync.sync.backup.copy_file", side_effect=held_until(release)):
        await orchestrator.start()
        orchestrator.cancel()
        release.set()
        outcome = await orchestrator.wait()

    assert outcome.phase == SyncPhase.RESTORED_AFTER_FAILURE
    assert "cancelled" in outcome.message
    assert read_tree(live_root) == {"a.txt": "a1"}


def test_cycle_outlives_the_callers_event_loop(
    orchestrator: SyncOrchestrator, candidate_root: Path, live_root: Path
):
    write_tree(live_root, {"a.txt": "a1"})
    write_tree(candidate_root, {"a.txt": "a2", "b.txt": "b2"})
    release = threading.Event()

    with patch("treesync.sync.apply.copy_file", side_effect=held_until(release)):
        record = asyncio.run(orchestrator.start())
        # the loop that started the cycle is closed now
        assert record.phase == SyncPhase.APPLY_STARTED
        assert orchestrator.in_flight
        release.set()
        outcome = asyncio.run(orchestrator.wait())

    assert outcome.phase == SyncPhase.COMPLETED
    assert read_tree(live_root) == {"a.txt": "a2", "b.txt": "b2"}
    assert read_status(orchestrator.config.status_path).phase == SyncPhase.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "live_files, candidate_files",
    [
        ({"docs": "a file", "keep.txt": "k"}, {"docs/x.txt": "x", "keep.txt": "k"}),
        ({"docs/x.txt": "x", "docs/sub/y.txt": "y"}, {"docs": "now a file"}),
    ],
)
async def test_path_changes_between_file_and_directory(
    orchestrator: SyncOrchestrator,
    candidate_root: Path,
    live_root: Path,
    live_files,
    candidate_files,
):
    write_tree(live_root, live_files)
    write_tree(candidate_root, candidate_files)

    outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.COMPLETED
    assert read_tree(live_root) == candidate_files
    # and the next cycle has nothing left to do
    assert (await orchestrator.run()).phase == SyncPhase.NO_CHANGES


@pytest.mark.asyncio
async def test_ignored_files_are_not_synced(
    orchestrator: SyncOrchestrator, candidate_root: Path, live_root: Path
):
    write_tree(candidate_root, {"a.txt": "alpha", "notes.tmp": "scratch", ".syncignore": "*.tmp\n"})
    write_tree(live_root, {"local.tmp": "keep"})

    outcome = await orchestrator.run()

    assert outcome.phase == SyncPhase.COMPLETED
    assert "notes.tmp" not in outcome.changeset.new
    assert (live_root / "local.tmp").read_text() == "keep"
    assert (live_root / "a.txt").read_text() == "alpha"


@pytest.mark.asyncio
async def test_preview_does_not_touch_live(
    orchestrator: SyncOrchestrator, candidate_root: Path, live_root: Path
):
    write_tree(live_root, {"a.txt": "v1"})
    write_tree(candidate_root, {"a.txt": "v2", "b.txt": "new"})

    changes = await orchestrator.preview()

    assert changes.new == {"b.txt"}
    assert changes.modified == {"a.txt"}
    assert read_tree(live_root) == {"a.txt": "v1"}
