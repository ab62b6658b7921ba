"""
Tests for the graph orchestrator.
"""

import asyncio

import pytest

from crystaldag.events import (
    EventStream,
    JobStatusChanged,
    RunFinished,
    RunStarted,
)
from crystaldag.exceptions import ConfigurationError
from crystaldag.graph import GraphBuilder
from crystaldag.models import CommandHook, JobStatus
from crystaldag.orchestrator import Orchestrator
from crystaldag.runners.base import PollStatus


@pytest.fixture
def builder():
    return GraphBuilder()


def make_orchestrator(graph, backends, settings, **kwargs):
    return Orchestrator(graph, backends, settings=settings, **kwargs)


class TestChains:
    """Tests for continuation chains and artifact flow."""

    @pytest.mark.asyncio
    async def test_artifact_flows_to_child(self, builder, make_backend, settings, command, tmp_path):
        root = builder.add_root("job1", tmp_path / "job1", command)
        dos = builder.add_child(root.id, "job1_DOS", command)
        backend = make_backend()

        report = await make_orchestrator(builder.build(), backend, settings).execute()

        assert report.status_of(root.id) == JobStatus.SUCCEEDED
        assert report.status_of(dos.id) == JobStatus.SUCCEEDED
        assert not report.failed
        # What the child saw when it was submitted, before writing its own artifact
        assert backend.runner.staged["job1_DOS"] == {"job1_DOS.chk": "wavefunction of job1"}
        assert backend.runner.staged["job1"] == {}
        assert backend.runner.submitted_seeds == ["job1", "job1_DOS"]

    @pytest.mark.asyncio
    async def test_parent_finishes_before_child_starts(
        self, builder, make_backend, settings, command, tmp_path, event_collector
    ):
        a = builder.add_root("a", tmp_path / "a", command)
        b = builder.add_child(a.id, "b", command)
        builder.add_child(b.id, "c", command)

        await make_orchestrator(
            builder.build(), make_backend(polls=2), settings, event_callback=event_collector
        ).execute()

        transitions = [
            (e.seed_name, e.new_status)
            for e in event_collector.events
            if isinstance(e, JobStatusChanged)
        ]
        assert transitions.index(("a", JobStatus.SUCCEEDED)) < transitions.index(
            ("b", JobStatus.READY)
        )
        assert transitions.index(("b", JobStatus.SUCCEEDED)) < transitions.index(
            ("c", JobStatus.READY)
        )

    @pytest.mark.asyncio
    async def test_independent_roots_run_concurrently(
        self, builder, make_backend, settings, command, tmp_path
    ):
        jobs = [builder.add_root(f"r{i}", tmp_path / f"r{i}", command) for i in range(4)]
        backend = make_backend(polls=20)
        orchestrator = make_orchestrator(builder.build(), backend, settings)

        run = asyncio.create_task(orchestrator.execute())
        while len(backend.runner.submitted) < 4 and not run.done():
            await asyncio.sleep(0.005)
        running = [orchestrator.status[j.id] for j in jobs]
        report = await run

        assert running.count(JobStatus.RUNNING) + running.count(JobStatus.READY) == 4
        assert len(report.succeeded()) == 4


class TestFailurePropagation:
    """Tests for failure cascades and partial results."""

    @pytest.mark.asyncio
    async def test_failure_skips_descendants_only(
        self, builder, make_backend, settings, command, tmp_path
    ):
        bad = builder.add_root("bad", tmp_path / "bad", command)
        bad_child = builder.add_child(bad.id, "bad_child", command)
        bad_grandchild = builder.add_child(bad_child.id, "bad_grandchild", command)
        good = builder.add_root("good", tmp_path / "good", command)
        good_child = builder.add_child(good.id, "good_child", command)
        backend = make_backend(results={"bad": PollStatus.FAILED})

        report = await make_orchestrator(builder.build(), backend, settings).execute()

        assert report.failed
        assert report.status_of(bad.id) == JobStatus.FAILED
        assert report.status_of(bad_child.id) == JobStatus.SKIPPED
        assert report.status_of(bad_grandchild.id) == JobStatus.SKIPPED
        assert "dependency bad[" in report.outcomes[bad_child.id].error
        assert report.status_of(good.id) == JobStatus.SUCCEEDED
        assert report.status_of(good_child.id) == JobStatus.SUCCEEDED
        assert "bad_child" not in backend.runner.submitted_seeds

    @pytest.mark.asyncio
    async def test_submit_failure(self, builder, make_backend, settings, command, tmp_path):
        a = builder.add_root("a", tmp_path / "a", command)
        b = builder.add_child(a.id, "b", command)

        report = await make_orchestrator(
            builder.build(), make_backend(fail_submit={"a"}), settings
        ).execute()

        assert report.status_of(a.id) == JobStatus.FAILED
        assert "rejected a" in report.outcomes[a.id].error
        assert report.outcomes[a.id].handle is None
        assert report.status_of(b.id) == JobStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_missing_artifact_fails_child(
        self, builder, make_backend, settings, command, tmp_path
    ):
        a = builder.add_root("a", tmp_path / "a", command)
        b = builder.add_child(a.id, "b", command)
        c = builder.add_child(b.id, "c", command)
        # Monitor writes .f9 but the engine expects .chk
        backend = make_backend(artifact_extension=".f9")

        report = await make_orchestrator(builder.build(), backend, settings).execute()

        assert report.status_of(a.id) == JobStatus.SUCCEEDED
        assert report.status_of(b.id) == JobStatus.FAILED
        assert "Continuation artifact" in report.outcomes[b.id].error
        assert report.status_of(c.id) == JobStatus.SKIPPED
        assert backend.runner.submitted_seeds == ["a"]

    @pytest.mark.asyncio
    async def test_custom_transformation_error(
        self, builder, make_backend, settings, command, tmp_path
    ):
        def broken(ctx):
            raise RuntimeError("cannot read geometry")

        a = builder.add_root("a", tmp_path / "a", command)
        b = builder.add_child(a.id, "b", command, transformation=broken)

        report = await make_orchestrator(builder.build(), make_backend(), settings).execute()

        assert report.status_of(b.id) == JobStatus.FAILED
        assert "cannot read geometry" in report.outcomes[b.id].error

    @pytest.mark.asyncio
    async def test_unknown_polls_fail_job(self, builder, make_backend, settings, command, tmp_path):
        a = builder.add_root("a", tmp_path / "a", command)
        backend = make_backend(unknown={"a"})

        report = await make_orchestrator(builder.build(), backend, settings).execute()

        assert report.status_of(a.id) == JobStatus.FAILED
        assert "undeterminable after 3 consecutive polls" in report.outcomes[a.id].error
        assert len(backend.monitor.forgotten) == 1

    @pytest.mark.asyncio
    async def test_failed_job_keeps_handle(self, builder, make_backend, settings, command, tmp_path):
        a = builder.add_root("a", tmp_path / "a", command)
        report = await make_orchestrator(
            builder.build(), make_backend(results={"a": PollStatus.FAILED}), settings
        ).execute()
        assert report.outcomes[a.id].handle == "fake:1000"
        assert report.outcomes[a.id].error == "fake:1000 finished unsuccessfully"


class TestHooks:
    """Tests for pre/post hooks around jobs."""

    @pytest.mark.asyncio
    async def test_pre_hook_failure_fails_job(
        self, builder, make_backend, settings, command, tmp_path
    ):
        a = builder.add_root("a", tmp_path / "a", command, pre_hooks=[CommandHook("false")])
        b = builder.add_child(a.id, "b", command)
        backend = make_backend()

        report = await make_orchestrator(builder.build(), backend, settings).execute()

        assert report.status_of(a.id) == JobStatus.FAILED
        assert report.outcomes[a.id].error.startswith("pre-hook failed")
        assert report.status_of(b.id) == JobStatus.SKIPPED
        assert backend.runner.submitted == []

    @pytest.mark.asyncio
    async def test_pre_hook_runs_in_working_dir(
        self, builder, make_backend, settings, command, tmp_path
    ):
        builder.add_root(
            "a", tmp_path / "a", command, pre_hooks=[CommandHook("touch", args=["staged"])]
        )
        await make_orchestrator(builder.build(), make_backend(), settings).execute()
        assert (tmp_path / "a" / "staged").exists()

    @pytest.mark.asyncio
    async def test_post_hook_failure_keeps_success(
        self, builder, make_backend, settings, command, tmp_path
    ):
        a = builder.add_root(
            "a", tmp_path / "a", command,
            post_hooks=[CommandHook("false"), CommandHook("touch", args=["archived"])],
        )
        b = builder.add_child(a.id, "b", command)

        report = await make_orchestrator(builder.build(), make_backend(), settings).execute()

        assert report.status_of(a.id) == JobStatus.SUCCEEDED
        assert len(report.outcomes[a.id].post_hook_errors) == 1
        assert (tmp_path / "a" / "archived").exists()
        assert report.status_of(b.id) == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_post_hooks_run_after_failure(
        self, builder, make_backend, settings, command, tmp_path
    ):
        builder.add_root(
            "a", tmp_path / "a", command, post_hooks=[CommandHook("touch", args=["cleaned"])]
        )
        backend = make_backend(results={"a": PollStatus.FAILED})
        await make_orchestrator(builder.build(), backend, settings).execute()
        assert (tmp_path / "a" / "cleaned").exists()


class TestBackends:
    """Tests for routing jobs to backends."""

    @pytest.mark.asyncio
    async def test_jobs_routed_by_backend_name(
        self, builder, make_backend, settings, command, tmp_path
    ):
        builder.add_root("scf", tmp_path / "scf", command, backend="cluster")
        builder.add_root("small", tmp_path / "small", command)
        local, cluster = make_backend("fake"), make_backend("cluster")

        report = await make_orchestrator(
            builder.build(), {"fake": local, "cluster": cluster}, settings,
            default_backend="fake",
        ).execute()

        assert cluster.runner.submitted_seeds == ["scf"]
        assert local.runner.submitted_seeds == ["small"]
        assert sorted(o.handle.split(":")[0] for o in report.outcomes.values()) == [
            "cluster", "fake"
        ]

    def test_unknown_job_backend(self, builder, make_backend, settings, command, tmp_path):
        builder.add_root("scf", tmp_path / "scf", command, backend="lsf")
        with pytest.raises(ConfigurationError, match="unknown backend 'lsf'"):
            make_orchestrator(builder.build(), make_backend(), settings)

    def test_unknown_default_backend(self, builder, make_backend, settings):
        with pytest.raises(ConfigurationError):
            make_orchestrator(builder.build(), make_backend(), settings, default_backend="pbs")

    def test_no_backends(self, builder, settings):
        with pytest.raises(ConfigurationError):
            make_orchestrator(builder.build(), {}, settings)


class TestRunLifecycle:
    """Tests for events and execute() contract."""

    @pytest.mark.asyncio
    async def test_event_sequence(
        self, builder, make_backend, settings, command, tmp_path, event_collector
    ):
        a = builder.add_root("a", tmp_path / "a", command)

        await make_orchestrator(
            builder.build(), make_backend(), settings, event_callback=event_collector
        ).execute()

        events = event_collector.events
        assert isinstance(events[0], RunStarted)
        assert events[0].total_jobs == 1
        assert isinstance(events[-1], RunFinished)
        assert events[-1].counts["succeeded"] == 1
        assert not events[-1].interrupted
        statuses = [e.new_status for e in events if isinstance(e, JobStatusChanged)]
        assert statuses == [JobStatus.READY, JobStatus.RUNNING, JobStatus.SUCCEEDED]
        assert all(e.job_id == a.id for e in events if isinstance(e, JobStatusChanged))

    @pytest.mark.asyncio
    async def test_broken_callback_does_not_stop_run(
        self, builder, make_backend, settings, command, tmp_path
    ):
        def explode(event):
            raise ValueError("observer bug")

        a = builder.add_root("a", tmp_path / "a", command)
        report = await make_orchestrator(
            builder.build(), make_backend(), settings, event_callback=explode
        ).execute()
        assert report.status_of(a.id) == JobStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_event_stream(self, builder, make_backend, settings, command, tmp_path):
        builder.add_root("a", tmp_path / "a", command)
        stream = EventStream()
        orchestrator = make_orchestrator(
            builder.build(), make_backend(), settings, event_callback=stream
        )

        run = asyncio.create_task(orchestrator.execute())
        received = [event async for event in stream]
        await run

        assert isinstance(received[0], RunStarted)
        assert isinstance(received[-1], RunFinished)

    @pytest.mark.asyncio
    async def test_execute_only_once(self, builder, make_backend, settings, command, tmp_path):
        builder.add_root("a", tmp_path / "a", command)
        orchestrator = make_orchestrator(builder.build(), make_backend(), settings)
        await orchestrator.execute()
        with pytest.raises(RuntimeError):
            await orchestrator.execute()

    @pytest.mark.asyncio
    async def test_empty_graph(self, builder, make_backend, settings):
        report = await make_orchestrator(builder.build(), make_backend(), settings).execute()
        assert report.outcomes == {}
        assert not report.failed

    @pytest.mark.asyncio
    async def test_report_in_topological_order(
        self, builder, make_backend, settings, command, tmp_path
    ):
        a = builder.add_root("a", tmp_path / "a", command)
        b = builder.add_child(a.id, "b", command)
        graph = builder.build()
        report = await make_orchestrator(graph, make_backend(), settings).execute()
        assert list(report.outcomes) == graph.topological_order()
        assert list(report.outcomes) == [a.id, b.id]
