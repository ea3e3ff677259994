"""Tests for dependency ordering, batching and schedule recomputation."""

import pytest
from conftest import make_plan, make_task

from packai.errors import CycleError
from packai.models import TaskStatus
from packai.orchestration.dependency_resolver import (
    DependencyResolver,
    extract_file_paths,
    find_unreachable,
)


@pytest.fixture
def resolver():
    return DependencyResolver()


# ---------------------------------------------------------------------------
# File path extraction tests
# ---------------------------------------------------------------------------


class TestExtractFilePaths:
    def test_directory_prefixed_paths(self):
        task = make_task("t", prompt="Edit src/App.tsx and tests/test_app.py now")
        assert extract_file_paths(task) == {"src/app.tsx", "tests/test_app.py"}

    def test_root_config_files(self):
        task = make_task("t", prompt="Update package.json, pyproject.toml.")
        assert extract_file_paths(task) == {"package.json", "pyproject.toml"}

    def test_label_is_scanned(self):
        task = make_task("t", label="Write lib/db.ts")
        assert extract_file_paths(task) == {"lib/db.ts"}

    def test_no_paths(self):
        assert extract_file_paths(make_task("t", prompt="Design the schema")) == set()


# ---------------------------------------------------------------------------
# Ordering tests
# ---------------------------------------------------------------------------


class TestTopologicalSort:
    def test_dependencies_first_stable_order(self, resolver):
        tasks = [make_task("c", "a"), make_task("a"), make_task("b"), make_task("d", "c", "b")]
        order = [t.id for t in resolver.topological_sort(tasks)]
        assert order == ["a", "b", "c", "d"]

    def test_out_of_set_dependency_ignored(self, resolver):
        tasks = [make_task("b", "elsewhere")]
        assert [t.id for t in resolver.topological_sort(tasks)] == ["b"]

    def test_cycle_names_only_members(self, resolver):
        tasks = [
            make_task("root"),
            make_task("x", "root", "z"),
            make_task("y", "x"),
            make_task("z", "y"),
            make_task("downstream", "z"),
        ]
        with pytest.raises(CycleError) as exc_info:
            resolver.topological_sort(tasks)
        assert exc_info.value.task_ids == ["x", "y", "z"]
        assert exc_info.value.code == "dependency-cycle"

    def test_self_dependency_is_cycle(self, resolver):
        with pytest.raises(CycleError) as exc_info:
            resolver.topological_sort([make_task("a", "a")])
        assert exc_info.value.task_ids == ["a"]


# ---------------------------------------------------------------------------
# Batch tests
# ---------------------------------------------------------------------------


class TestBuildBatches:
    def test_fan_out(self, resolver):
        tasks = [
            make_task("a", estimated_minutes=5),
            make_task("b", "a", estimated_minutes=3),
            make_task("c", "a", estimated_minutes=8),
        ]
        batches = resolver.build_batches(tasks)

        assert [b.task_ids for b in batches] == [["a"], ["b", "c"]]
        assert [b.index for b in batches] == [0, 1]
        assert batches[1].estimated_minutes == 8

    def test_every_task_scheduled_once_after_deps(self, resolver):
        tasks = [
            make_task("a"),
            make_task("b", "a"),
            make_task("c", "a"),
            make_task("d", "b", "c"),
            make_task("e"),
        ]
        batches = resolver.build_batches(tasks)
        position = {tid: b.index for b in batches for tid in b.task_ids}

        assert sorted(position) == ["a", "b", "c", "d", "e"]
        for task in tasks:
            for dep in task.depends_on:
                assert position[dep] < position[task.id]

    def test_non_parallelizable_runs_alone(self, resolver):
        tasks = [
            make_task("a"),
            make_task("solo", parallelizable=False),
            make_task("b"),
        ]
        batches = resolver.build_batches(tasks)
        assert [b.task_ids for b in batches] == [["a", "b"], ["solo"]]

    def test_non_parallelizable_first_takes_batch(self, resolver):
        tasks = [make_task("solo", parallelizable=False), make_task("b")]
        batches = resolver.build_batches(tasks)
        assert [b.task_ids for b in batches] == [["solo"], ["b"]]

    def test_file_overlap_splits_batch(self, resolver):
        tasks = [
            make_task("a", prompt="Create src/api/users.ts"),
            make_task("b", prompt="Add validation to src/api/users.ts"),
            make_task("c", prompt="Write src/api/posts.ts"),
        ]
        batches = resolver.build_batches(tasks)
        assert [b.task_ids for b in batches] == [["a", "c"], ["b"]]

    def test_empty(self, resolver):
        assert resolver.build_batches([]) == []

    def test_resolve_execution_order_spans_phases(self, resolver):
        plan = make_plan([make_task("a")], [make_task("b", "a")])
        batches = resolver.resolve_execution_order(plan)
        assert [b.task_ids for b in batches] == [["a"], ["b"]]


class TestParallelChecks:
    def test_can_run_in_parallel(self, resolver):
        a = make_task("a", prompt="edit src/a.py")
        b = make_task("b", prompt="edit src/b.py")
        assert resolver.can_run_in_parallel(a, b)
        assert not resolver.can_run_in_parallel(a, make_task("c", "a"))
        assert not resolver.can_run_in_parallel(a, make_task("d", prompt="fix src/a.py"))
        assert not resolver.can_run_in_parallel(a, make_task("e", parallelizable=False))

    def test_detect_conflicts(self, resolver):
        tasks = [
            make_task("a", prompt="touch src/x.py"),
            make_task("b", "a", prompt="also src/x.py"),
        ]
        conflicts = resolver.detect_conflicts(tasks)
        assert [(c.type, c.reason) for c in conflicts] == [
            ("dependency", '"b" depends on "a"'),
            ("file", 'Both touch "src/x.py"'),
        ]


# ---------------------------------------------------------------------------
# Recompute tests
# ---------------------------------------------------------------------------


class TestRecomputeSchedule:
    def test_partitions_by_status(self, resolver):
        tasks = [
            make_task("done", status=TaskStatus.COMPLETED),
            make_task("bad", status=TaskStatus.FAILED),
            make_task("busy", status=TaskStatus.RUNNING),
            make_task("ready", "done"),
            make_task("waiting", "busy"),
            make_task("doomed", "bad"),
            make_task("doomed-too", "doomed"),
        ]
        snapshot = resolver.recompute_schedule(tasks)

        assert [t.id for t in snapshot.ready] == ["ready"]
        assert [(b.task.id, b.waiting_on) for b in snapshot.blocked] == [
            ("waiting", ["busy"])
        ]
        assert [t.id for t in snapshot.unreachable] == ["doomed", "doomed-too"]
        assert [t.id for t in snapshot.completed] == ["done"]
        assert [t.id for t in snapshot.failed] == ["bad"]
        assert [t.id for t in snapshot.running] == ["busy"]

    def test_skipped_dependency_counts_as_done(self, resolver):
        tasks = [make_task("s", status=TaskStatus.SKIPPED), make_task("t", "s")]
        snapshot = resolver.recompute_schedule(tasks)
        assert [t.id for t in snapshot.ready] == ["t"]

    def test_find_unreachable_excludes_failed(self):
        tasks = [
            make_task("a", status=TaskStatus.FAILED),
            make_task("b", "a", status=TaskStatus.FAILED),
            make_task("c", "b"),
        ]
        assert find_unreachable(tasks) == {"c"}


# ---------------------------------------------------------------------------
# Visualization tests
# ---------------------------------------------------------------------------


class TestVisualization:
    def test_batches_text(self, resolver):
        tasks = [
            make_task("a", estimated_minutes=5),
            make_task("b", "a", estimated_minutes=2.5),
            make_task("c", "a", estimated_minutes=1),
        ]
        text = resolver.visualize_batches(resolver.build_batches(tasks))
        assert text == (
            "[Batch 0] ~5min\n"
            "  a\n"
            "\n"
            "[Batch 1] (parallel) ~2.5min\n"
            "  b (after: a)\n"
            "  c (after: a)"
        )

    def test_dot(self, resolver):
        tasks = [
            make_task("a", agent="copilot", estimated_minutes=3, status=TaskStatus.COMPLETED),
            make_task("b", "a"),
        ]
        dot = resolver.visualize_dot(tasks)
        assert dot.startswith("digraph dependencies {")
        assert '"a" [label="a\\n[C] ~3m" style=filled fillcolor="lightgreen"];' in dot
        assert '"a" -> "b";' in dot
        assert dot.endswith("}")

    def test_snapshot_text(self, resolver):
        tasks = [make_task("a", status=TaskStatus.RUNNING), make_task("b", "a")]
        text = resolver.visualize_snapshot(resolver.recompute_schedule(tasks))
        assert text == "Running: a\nBlocked: b (waiting: a)"
