"""End-to-end tests of the migration driver with fake collaborators."""

import io
from dataclasses import replace

import pytest

import phymv
import utils
from cohorts import ConcurrencyBudget, default_budgets
from conftest import write_script
from inventory import WorkItem
from mover import CompletionRecord, MoveExecutor, Outcome
from progress import RunState


class FakeInventory:
    """Replicas as (path, size, resource) triples."""

    def __init__(self, replicas):
        self.replicas = replicas
        self.calls = []

    def _on(self, resc):
        return {path: size for path, size, r in self.replicas if r == resc}

    def list_movable(self, src, dest, collection=None):
        self.calls.append("list")
        on_dest = self._on(dest)
        return [WorkItem(size, path) for path, size in self._on(src).items()
                if path not in on_dest and (collection is None or path.startswith(collection + "/"))]

    def count_unmovable(self, src, dest, collection=None):
        self.calls.append("count")
        on_dest = self._on(dest)
        return sum(1 for path in self._on(src) if path in on_dest)


class FakeExecutor(MoveExecutor):
    def __init__(self, fail=(), explode_on=None):
        self.requests = []
        self.fail = set(fail)
        self.explode_on = explode_on

    def run(self, request, log):
        self.requests.append(request)
        for path in request.paths:
            if path == self.explode_on:
                raise RuntimeError("executor died")
            log.write(f"moved {path}\n")
            if path in self.fail:
                yield CompletionRecord(path, Outcome.FAILURE, "status = -27000")
            else:
                yield CompletionRecord(path, Outcome.SUCCESS)


def _migrate(settings, inventory, executor):
    out, progress = io.StringIO(), io.StringIO()
    state = phymv.migrate(settings, inventory, executor, out=out, progress_stream=progress)
    return state, out.getvalue(), progress.getvalue()


SCENARIO_A = [("a", 0, "r1"), ("b", 0, "r1"), ("c", 5000000, "r1"), ("d", 40000000, "r1")]


class TestMigrate:
    """Driver sequencing, counters and operator output."""

    def test_scenario_a(self, settings):
        executor = FakeExecutor()
        state, out, progress = _migrate(settings, FakeInventory(SCENARIO_A), executor)
        assert state == RunState(total_items=4, completed_count=4, failed_count=0)
        assert [r.paths for r in executor.requests] == [("a", "b"), ("c",), ("d",)]
        assert "4 data objects to physically move" in out
        assert "Physically moving 2 files with size in [0, 0) MiB" in out
        assert "Physically moving 0 files with size >= 480 MiB" in out
        assert out.rstrip().endswith("4 data objects processed")
        assert "cohort: 2/2, all: 2/4\n" in progress
        assert "cohort: 1/1, all: 4/4\n" in progress

    def test_budgets_drive_requests(self, settings):
        executor = FakeExecutor()
        _migrate(replace(settings, multiplier=2), FakeInventory(SCENARIO_A), executor)
        first, second, third = executor.requests
        assert (first.max_procs, first.batch_size, first.min_threads) == (32, 512, 0)
        assert (third.max_procs, third.batch_size, third.min_threads) == (16, 128, 1)
        assert first.src_resc == "r1" and first.dest_resc == "r2"

    def test_scenario_b_empty_inventory(self, settings):
        executor = FakeExecutor()
        state, out, _ = _migrate(settings, FakeInventory([]), executor)
        assert "0 data objects to physically move" in out
        assert executor.requests == []
        assert state.completed_count == 0
        assert "Physically moving" not in out

    def test_scenario_c_replica_on_destination(self, settings):
        replicas = [("x", 10, "r1"), ("x", 10, "r2"), ("y", 0, "r1")]
        inventory = FakeInventory(replicas)
        executor = FakeExecutor()
        state, out, _ = _migrate(settings, inventory, executor)
        assert "WARNING: NOT ALL DATA OBJECTS COULD BE MOVED" in out
        assert [r.paths for r in executor.requests] == [("y",)]
        assert state.total_items == 1
        assert inventory.calls == ["count", "list"]

    def test_no_warning_when_all_movable(self, settings):
        _, out, _ = _migrate(settings, FakeInventory(SCENARIO_A), FakeExecutor())
        assert "WARNING" not in out

    def test_collection_scope(self, settings):
        replicas = [("/zone/p/a", 0, "r1"), ("/zone/q/b", 0, "r1")]
        executor = FakeExecutor()
        _migrate(replace(settings, collection="/zone/p"), FakeInventory(replicas), executor)
        assert [r.paths for r in executor.requests] == [("/zone/p/a",)]

    def test_log_truncated_once_then_appended(self, settings):
        settings.log_file.write_text("old run\n")
        _migrate(settings, FakeInventory(SCENARIO_A), FakeExecutor())
        assert settings.log_file.read_text().splitlines() == ["moved a", "moved b", "moved c", "moved d"]

    def test_failures_are_counted(self, settings):
        executor = FakeExecutor(fail={"c"})
        state, out, _ = _migrate(settings, FakeInventory(SCENARIO_A), executor)
        assert state.completed_count == 4
        assert state.failed_count == 1
        assert "1 data objects failed to move" in out

    def test_broken_cohort_does_not_stop_later_cohorts(self, settings):
        executor = FakeExecutor(explode_on="b")
        state, _, _ = _migrate(settings, FakeInventory(SCENARIO_A), executor)
        assert [r.paths for r in executor.requests] == [("a", "b"), ("c",), ("d",)]
        assert state.completed_count == 3


class TestRunCohort:
    def test_empty_cohort_is_not_executed(self, settings, tmp_path):
        executor = FakeExecutor()
        state = RunState(total_items=9, completed_count=5)
        out = io.StringIO()
        with (tmp_path / "log").open("a") as log:
            new_state = phymv.run_cohort(state, [WorkItem(0, "a")], ConcurrencyBudget(1, 15), executor, settings, log, out=out)
        assert new_state is state
        assert executor.requests == []
        assert out.getvalue() == "Physically moving 0 files with size >= 480 MiB\n"

    def test_runs_in_tier_order(self):
        assert [b.min_threads for b in default_budgets()] == [0, 0, 1, 2, 3, 5, 7, 15]


class TestCli:
    """Argument errors exit with status 1 before touching anything."""

    def test_missing_positionals(self, capsys):
        with pytest.raises(SystemExit) as exc:
            phymv.parse_args(["r1", "r2"])
        assert exc.value.code == 1
        assert "usage: phymv" in capsys.readouterr().err

    def test_unknown_option(self):
        with pytest.raises(SystemExit) as exc:
            phymv.parse_args(["--bogus", "r1", "r2", "log"])
        assert exc.value.code == 1

    @pytest.mark.parametrize("value", ["0", "-2", "two"])
    def test_bad_multiplier(self, value):
        with pytest.raises(SystemExit) as exc:
            phymv.parse_args(["-m", value, "r1", "r2", "log"])
        assert exc.value.code == 1

    def test_help_exits_zero(self):
        with pytest.raises(SystemExit) as exc:
            phymv.parse_args(["--help"])
        assert exc.value.code == 0

    def test_options(self):
        args = phymv.parse_args(["-c", "/zone/home", "--multiplier", "3", "r1", "r2", "log"])
        assert (args.src_resc, args.dest_resc, args.log_file) == ("r1", "r2", "log")
        assert args.collection == "/zone/home"
        assert args.multiplier == 3

    def test_bad_config_exits_one(self, tmp_path):
        config = tmp_path / "phymv.yaml"
        config.write_text("db_hots: somewhere\n")
        log = tmp_path / "phymv.log"
        assert phymv.main(["--config", str(config), "r1", "r2", str(log)]) == 1
        assert not log.exists()

    def test_unreachable_catalog_exits_one(self, tmp_path, monkeypatch):
        monkeypatch.setattr(phymv.utils, "install_signal_handlers", lambda: None)
        psql = write_script(tmp_path / "psql", "cat >/dev/null\necho 'could not connect' >&2\nexit 2\n")
        config = tmp_path / "phymv.yaml"
        config.write_text(f"psql: {psql}\niphymv: {tmp_path / 'iphymv'}\n")
        assert phymv.main(["--config", str(config), "r1", "r2", str(tmp_path / "phymv.log")]) == 1

    def test_termination_signal_exits_130(self, tmp_path, monkeypatch):
        class InterruptedExecutor(FakeExecutor):
            terminated = False

            def __init__(self, iphymv, thread_hint):
                super().__init__()

            def run(self, request, log):
                raise utils.GracefulExit()
                yield

            def terminate(self):
                InterruptedExecutor.terminated = True

        monkeypatch.setattr(phymv.utils, "install_signal_handlers", lambda: None)
        monkeypatch.setattr(phymv, "IPhymvExecutor", InterruptedExecutor)
        monkeypatch.setattr(phymv, "IcatInventory", lambda settings: FakeInventory(SCENARIO_A))
        assert phymv.main(["r1", "r2", str(tmp_path / "phymv.log")]) == 130
        assert InterruptedExecutor.terminated
