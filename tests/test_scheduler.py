"""
Tests for the SLURM and PBS scheduler backends.

Scheduler commands are replaced by an AsyncMock of run_command, except
for one end-to-end test driving bash stand-ins for sbatch/squeue/scancel.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from crystaldag.exceptions import (
    BackendUnavailableError,
    CancelError,
    ConfigurationError,
    StatusError,
    SubmitError,
)
from crystaldag.models import CommandSpec, Job
from crystaldag.runners import create_backend
from crystaldag.runners.base import CommandResult, JobHandle, PollStatus
from crystaldag.runners.pbs import PbsMonitor, parse_qstat_full, pbs_backend
from crystaldag.runners.scheduler import SchedulerMonitor, SchedulerRunner
from crystaldag.runners.slurm import SlurmMonitor, slurm_backend

RUN_COMMAND = "crystaldag.runners.scheduler.run_command"


def ok(stdout="", stderr=""):
    return CommandResult(exit_status=0, stdout=stdout, stderr=stderr)


def err(stderr="", exit_status=1):
    return CommandResult(exit_status=exit_status, stdout="", stderr=stderr)


@pytest.fixture
def job(tmp_path):
    work_dir = tmp_path / "mgo"
    work_dir.mkdir()
    return Job.create("mgo", work_dir, CommandSpec("job.slurm", args=["--fast"]))


@pytest.fixture
def slurm(settings):
    return slurm_backend(settings, check_available=False)


@pytest.fixture
def pbs(settings):
    return pbs_backend(settings, check_available=False)


def handle_for(job, backend="slurm", native_id="12345"):
    return JobHandle(backend, native_id, job.id, job.working_dir, job.artifact(".out"))


class TestSlurmSubmission:
    """Tests for sbatch submission."""

    @pytest.mark.asyncio
    async def test_submit_parses_job_id(self, slurm, job):
        mock = AsyncMock(return_value=ok("Submitted batch job 12345\n"))
        with patch(RUN_COMMAND, mock):
            handle = await slurm.runner.submit(job)

        assert handle.native_id == "12345"
        assert str(handle) == "slurm:12345"
        assert handle.output_file == job.working_dir / "mgo.out"
        argv = mock.call_args.args[0]
        assert argv == ["sbatch", "job.slurm", "--fast"]
        assert mock.call_args.kwargs["cwd"] == job.working_dir

    @pytest.mark.asyncio
    async def test_rejected_submission(self, slurm, job):
        mock = AsyncMock(return_value=err("sbatch: error: Batch job submission failed: "
                                          "Invalid account"))
        with patch(RUN_COMMAND, mock):
            with pytest.raises(SubmitError) as exc_info:
                await slurm.runner.submit(job)

        assert exc_info.value.exit_code == 1
        assert "Invalid account" in exc_info.value.stderr_output
        assert exc_info.value.job_id == job.id

    @pytest.mark.asyncio
    async def test_unparseable_output(self, slurm, job):
        with patch(RUN_COMMAND, AsyncMock(return_value=ok("queued somewhere\n"))):
            with pytest.raises(SubmitError, match="Could not parse job ID"):
                await slurm.runner.submit(job)

    @pytest.mark.asyncio
    async def test_submit_timeout(self, slurm, job):
        with patch(RUN_COMMAND, AsyncMock(side_effect=asyncio.TimeoutError())):
            with pytest.raises(SubmitError, match="timed out"):
                await slurm.runner.submit(job)


class TestSlurmStatus:
    """Tests for squeue/sacct state mapping."""

    @pytest.mark.parametrize(
        "token,expected",
        [
            ("PENDING", PollStatus.RUNNING),
            ("PD", PollStatus.RUNNING),
            ("RUNNING", PollStatus.RUNNING),
            ("COMPLETING", PollStatus.RUNNING),
            ("COMPLETED", PollStatus.SUCCEEDED),
            ("FAILED", PollStatus.FAILED),
            ("TIMEOUT", PollStatus.FAILED),
            ("OUT_OF_MEMORY", PollStatus.FAILED),
            ("CANCELLED by 1000", PollStatus.FAILED),
            ("completed", PollStatus.SUCCEEDED),
        ],
    )
    def test_parse_state(self, slurm, token, expected):
        assert slurm.monitor.parse_state(token) == expected

    def test_parse_unknown_state(self, slurm):
        assert slurm.monitor.parse_state("SPECIAL_EXIT_X") is None
        assert slurm.monitor.parse_state("   ") is None

    @pytest.mark.asyncio
    async def test_squeue_state(self, slurm, job):
        mock = AsyncMock(return_value=ok("PENDING|Priority\n"))
        with patch(RUN_COMMAND, mock):
            assert await slurm.monitor.poll(handle_for(job)) == PollStatus.RUNNING
        assert mock.call_args.args[0] == ["squeue", "-j", "12345", "-h", "-o", "%T|%r"]

    @pytest.mark.asyncio
    async def test_falls_back_to_sacct(self, slurm, job):
        mock = AsyncMock(side_effect=[
            ok(""),
            ok("COMPLETED\nCOMPLETED\nCOMPLETED\n"),
        ])
        with patch(RUN_COMMAND, mock):
            assert await slurm.monitor.poll(handle_for(job)) == PollStatus.SUCCEEDED
        assert mock.call_args.args[0][0] == "sacct"

    @pytest.mark.asyncio
    async def test_no_state_anywhere(self, slurm, job):
        mock = AsyncMock(side_effect=[err("slurm_load_jobs error: Invalid job id"), ok("")])
        with patch(RUN_COMMAND, mock):
            with pytest.raises(StatusError, match="no state"):
                await slurm.monitor.poll(handle_for(job))

    @pytest.mark.asyncio
    async def test_unrecognised_state(self, slurm, job):
        with patch(RUN_COMMAND, AsyncMock(return_value=ok("WEIRD|None\n"))):
            with pytest.raises(StatusError, match="Unrecognised"):
                await slurm.monitor.poll(handle_for(job))

    @pytest.mark.asyncio
    async def test_status_command_timeout(self, slurm, job):
        with patch(RUN_COMMAND, AsyncMock(side_effect=asyncio.TimeoutError())):
            with pytest.raises(StatusError, match="timed out"):
                await slurm.monitor.poll(handle_for(job))


class TestSlurmCancel:
    """Tests for scancel."""

    @pytest.mark.asyncio
    async def test_cancel(self, slurm, job):
        mock = AsyncMock(return_value=ok())
        with patch(RUN_COMMAND, mock):
            await slurm.runner.cancel(handle_for(job))
        assert mock.call_args.args[0] == ["scancel", "12345"]

    @pytest.mark.asyncio
    async def test_cancel_finished_job_is_confirmed(self, slurm, job):
        mock = AsyncMock(return_value=err("scancel: error: Kill job error on job id 12345: "
                                          "Job/step already completing or completed"))
        with patch(RUN_COMMAND, mock):
            await slurm.runner.cancel(handle_for(job))

    @pytest.mark.asyncio
    async def test_cancel_refused(self, slurm, job):
        mock = AsyncMock(return_value=err("scancel: error: Access/permission denied"))
        with patch(RUN_COMMAND, mock):
            with pytest.raises(CancelError) as exc_info:
                await slurm.runner.cancel(handle_for(job))
        assert "permission denied" in exc_info.value.reason


class TestPbs:
    """Tests for the PBS preset."""

    QSTAT_RUNNING = """Job Id: 4242.pbs01
    Job_Name = mgo
    job_state = R
    queue = workq
"""

    QSTAT_FINISHED = """Job Id: 4242.pbs01
    Job_Name = mgo
    job_state = F
    Exit_status = {code}
"""

    def test_parse_qstat_full(self):
        attributes = parse_qstat_full(self.QSTAT_RUNNING)
        assert attributes["job_state"] == "R"
        assert attributes["Job_Name"] == "mgo"

    @pytest.mark.asyncio
    async def test_submit_takes_full_id(self, pbs, job):
        with patch(RUN_COMMAND, AsyncMock(return_value=ok("4242.pbs01\n"))):
            handle = await pbs.runner.submit(job)
        assert handle.native_id == "4242.pbs01"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "output,expected",
        [
            (QSTAT_RUNNING, PollStatus.RUNNING),
            (QSTAT_FINISHED.format(code=0), PollStatus.SUCCEEDED),
            (QSTAT_FINISHED.format(code=271), PollStatus.FAILED),
        ],
    )
    async def test_states(self, pbs, job, output, expected):
        with patch(RUN_COMMAND, AsyncMock(return_value=ok(output))):
            status = await pbs.monitor.poll(handle_for(job, "pbs", "4242.pbs01"))
        assert status == expected

    @pytest.mark.asyncio
    async def test_finished_without_exit_status(self, pbs, job):
        output = "Job Id: 1.pbs01\n    job_state = F\n"
        with patch(RUN_COMMAND, AsyncMock(return_value=ok(output))):
            with pytest.raises(StatusError):
                await pbs.monitor.poll(handle_for(job, "pbs", "1.pbs01"))

    @pytest.mark.asyncio
    async def test_qdel_unknown_job_is_confirmed(self, pbs, job):
        mock = AsyncMock(return_value=err("qdel: Unknown Job Id 4242.pbs01"))
        with patch(RUN_COMMAND, mock):
            await pbs.runner.cancel(handle_for(job, "pbs", "4242.pbs01"))
        assert mock.call_args.args[0] == ["qdel", "4242.pbs01"]


class TestAvailability:
    """Tests for detecting missing scheduler commands."""

    def test_missing_sbatch(self, settings):
        with patch("crystaldag.runners.scheduler.shutil.which", return_value=None):
            with pytest.raises(BackendUnavailableError) as exc_info:
                slurm_backend(settings)
        assert exc_info.value.backend == "slurm"
        assert exc_info.value.missing == "sbatch"

    def test_all_present(self, settings):
        with patch("crystaldag.runners.scheduler.shutil.which", return_value="/usr/bin/x"):
            backend = pbs_backend(settings, keywords=True)
        assert backend.name == "pbs"
        assert isinstance(backend.monitor.inner, PbsMonitor)

    def test_create_backend_unknown(self):
        with pytest.raises(ConfigurationError, match="Unknown backend 'lsf'"):
            create_backend("lsf")

    def test_create_backend_by_name(self, settings):
        with patch("crystaldag.runners.scheduler.shutil.which", return_value="/usr/bin/x"):
            backend = create_backend("slurm", settings)
        assert isinstance(backend.monitor, SlurmMonitor)


class TestCustomScheduler:
    """End-to-end run of a template-driven scheduler with bash stand-ins."""

    @pytest.mark.asyncio
    async def test_custom_templates(self, settings, make_script, job):
        submit = make_script("mysub", 'echo "job <777> queued for $1 in $(basename $PWD)"\n')
        status = make_script("mystat", 'echo "state: done $1"\n')
        cancel = make_script("mydel", 'echo "no such job $1" >&2\nexit 1\n')

        runner = SchedulerRunner(
            "custom",
            submit_command=[str(submit)],
            cancel_command=[str(cancel), "{job_id}"],
            job_id_pattern=r"<(\d+)>",
            already_gone_pattern=r"no such job",
            settings=settings,
        )
        monitor = SchedulerMonitor(
            "custom",
            status_command=[str(status), "{job_id}"],
            state_map={"done": PollStatus.SUCCEEDED},
            state_pattern=r"state: (\w+)",
            settings=settings,
        )

        handle = await runner.submit(job)
        assert handle.native_id == "777"
        assert await monitor.poll(handle) == PollStatus.SUCCEEDED
        await runner.cancel(handle)
