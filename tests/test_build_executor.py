"""
Tests for the docker build executor with a faked process layer.
"""

import asyncio
import os

import pytest

from verified_programs.core.errors import BuildError, NonDeterministicBuildError
from verified_programs.models.schemas import BuildParams
from verified_programs.services.build_executor import DockerBuildExecutor, normalize_clone_url
from verified_programs.utils.hashing import compute_executable_hash

from tests.conftest import PROGRAM_ID

ARTIFACT = b"\x7fELF" + b"\x42" * 512


class FakeStream:
    def __init__(self, chunks, hang=False):
        self.chunks = list(chunks)
        self.hang = hang

    async def read(self, n):
        if self.chunks:
            return self.chunks.pop(0)
        if self.hang:
            await asyncio.sleep(3600)
        return b""


class FakeProcess:
    def __init__(self, exit_code=0, chunks=(), hang=False):
        self.stdout = FakeStream(chunks, hang)
        self.exit_code = exit_code
        self.returncode = None
        self.killed = False

    async def wait(self):
        self.returncode = -9 if self.killed else self.exit_code
        return self.returncode

    def kill(self):
        self.killed = True


class FakeRuntime:
    """Stands in for asyncio.create_subprocess_exec running git and docker."""

    def __init__(self, artifacts=(ARTIFACT,), docker_exit=0, git_exit=0, hang=False, output=b"Finished release\n"):
        self.artifacts = list(artifacts)
        self.docker_exit = docker_exit
        self.git_exit = git_exit
        self.hang = hang
        self.output = output
        self.calls = []
        self.builds = 0

    async def __call__(self, *args, stdout=None, stderr=None):
        self.calls.append(list(args))
        if args[0] == "git":
            return FakeProcess(self.git_exit, [b"cloning\n"])
        if args[1] == "kill":
            return FakeProcess(0)

        if self.docker_exit == 0 and not self.hang and self.artifacts:
            checkout = args[args.index("-v") + 1].split(":")[0]
            workdir = args[args.index("-w") + 1][len("/build"):].lstrip("/")
            deploy = os.path.join(checkout, workdir, "target", "deploy")
            os.makedirs(deploy, exist_ok=True)
            artifact = self.artifacts[min(self.builds, len(self.artifacts) - 1)]
            with open(os.path.join(deploy, "prog.so"), "wb") as f:
                f.write(artifact + b"\x00" * 64)
        self.builds += 1
        return FakeProcess(self.docker_exit, [self.output], hang=self.hang)

    def docker_runs(self):
        return [c for c in self.calls if c[0] == "docker" and c[1] == "run"]


def make_params(**overrides) -> BuildParams:
    data = {"program_id": PROGRAM_ID, "repository": "github.com/example/prog", "commit_hash": "abc123", "lib_name": "prog"}
    data.update(overrides)
    return BuildParams.model_validate(data)


@pytest.fixture
def make_executor(tmp_path, monkeypatch, metrics):
    def factory(runtime: FakeRuntime, **kwargs) -> DockerBuildExecutor:
        monkeypatch.setattr("verified_programs.services.build_executor.asyncio.create_subprocess_exec", runtime)
        options = dict(
            docker_binary="docker",
            git_binary="git",
            workdir=str(tmp_path / "builds"),
            build_timeout=5,
            checkout_timeout=5,
            max_concurrent_builds=2,
            queue_timeout=1,
            reproducibility_runs=1,
            metrics=metrics,
        )
        options.update(kwargs)
        return DockerBuildExecutor(**options)
    return factory


class TestSuccessfulBuild:
    @pytest.mark.asyncio
    async def test_hash_of_produced_executable(self, make_executor, tmp_path):
        runtime = FakeRuntime()
        executor = make_executor(runtime)

        outcome = await executor.run(make_params())

        assert outcome.executable_hash == compute_executable_hash(ARTIFACT)
        assert outcome.exit_code == 0
        assert "Finished release" in outcome.log_excerpt
        assert os.listdir(tmp_path / "builds") == []

    @pytest.mark.asyncio
    async def test_checkout_is_pinned_to_commit(self, make_executor):
        runtime = FakeRuntime()
        await make_executor(runtime).run(make_params())

        git_calls = [c for c in runtime.calls if c[0] == "git"]
        assert git_calls[0][:4] == ["git", "clone", "--quiet", "--no-checkout"]
        assert "https://github.com/example/prog" in git_calls[0]
        assert git_calls[1][-1] == "abc123"

    @pytest.mark.asyncio
    async def test_container_command(self, make_executor):
        runtime = FakeRuntime()
        params = make_params(
            base_image="solanafoundation/solana-verifiable-build:1.17.6",
            mount_path="programs/prog",
            cargo_args=["--features", "mainnet"],
        )
        await make_executor(runtime).run(params)

        command = runtime.docker_runs()[0]
        assert command[:3] == ["docker", "run", "--rm"]
        for flag in ("--cpus", "--memory", "--pids-limit", "--name"):
            assert flag in command
        assert command[command.index("-w") + 1] == "/build/programs/prog"
        assert command[-5:] == [
            "solanafoundation/solana-verifiable-build:1.17.6", "cargo", "build-sbf", "--features", "mainnet",
        ]

    @pytest.mark.asyncio
    async def test_bpf_flag_selects_build_bpf(self, make_executor):
        runtime = FakeRuntime()
        await make_executor(runtime).run(make_params(bpf_flag=True))
        assert runtime.docker_runs()[0][-2:] == ["cargo", "build-bpf"]

    def test_clone_url_gets_scheme(self):
        assert normalize_clone_url("github.com/example/prog") == "https://github.com/example/prog"
        assert normalize_clone_url("https://gitlab.com/a/b") == "https://gitlab.com/a/b"


class TestBuildFailures:
    @pytest.mark.asyncio
    async def test_checkout_failure(self, make_executor):
        runtime = FakeRuntime(git_exit=128)
        with pytest.raises(BuildError) as exc_info:
            await make_executor(runtime).run(make_params())
        assert exc_info.value.reason == BuildError.CHECKOUT_FAILED
        assert runtime.docker_runs() == []

    @pytest.mark.asyncio
    async def test_toolchain_failure_keeps_log_excerpt(self, make_executor, metrics):
        runtime = FakeRuntime(docker_exit=101, output=b"error[E0425]: cannot find value\n")
        with pytest.raises(BuildError) as exc_info:
            await make_executor(runtime).run(make_params())

        error = exc_info.value
        assert error.reason == BuildError.TOOLCHAIN_FAILED
        assert error.exit_code == 101
        assert "E0425" in error.log_excerpt
        assert not error.retryable
        assert metrics.registry.get_sample_value(
            'verified_programs_builds_total', {'outcome': 'toolchain_failed'}
        ) == 1

    @pytest.mark.asyncio
    async def test_missing_artifact(self, make_executor):
        runtime = FakeRuntime(artifacts=())
        with pytest.raises(BuildError) as exc_info:
            await make_executor(runtime).run(make_params())
        assert exc_info.value.reason == BuildError.ARTIFACT_MISSING

    @pytest.mark.asyncio
    async def test_timeout_kills_container(self, make_executor):
        runtime = FakeRuntime(hang=True)
        executor = make_executor(runtime, build_timeout=0.05)

        with pytest.raises(BuildError) as exc_info:
            await executor.run(make_params())

        assert exc_info.value.reason == BuildError.TIMEOUT
        container_name = runtime.docker_runs()[0][runtime.docker_runs()[0].index("--name") + 1]
        assert ["docker", "kill", container_name] in runtime.calls

    @pytest.mark.asyncio
    async def test_output_ceiling(self, make_executor):
        runtime = FakeRuntime(hang=True, output=b"x" * 4096)
        executor = make_executor(runtime, max_log_bytes=1024)

        with pytest.raises(BuildError) as exc_info:
            await executor.run(make_params())
        assert exc_info.value.reason == BuildError.OUTPUT_LIMIT

    @pytest.mark.asyncio
    async def test_oversized_artifact(self, make_executor):
        runtime = FakeRuntime()
        executor = make_executor(runtime, max_artifact_bytes=16)

        with pytest.raises(BuildError) as exc_info:
            await executor.run(make_params())
        assert exc_info.value.reason == BuildError.OUTPUT_LIMIT

    @pytest.mark.asyncio
    async def test_no_free_slot_is_retryable(self, make_executor):
        executor = make_executor(FakeRuntime(), max_concurrent_builds=1, queue_timeout=0.05)
        await executor._slots.acquire()

        with pytest.raises(BuildError) as exc_info:
            await executor.run(make_params())
        assert exc_info.value.reason == BuildError.RESOURCE_EXHAUSTED
        assert exc_info.value.retryable


class TestReproducibility:
    @pytest.mark.asyncio
    async def test_identical_runs_agree(self, make_executor):
        runtime = FakeRuntime(artifacts=(ARTIFACT, ARTIFACT))
        outcome = await make_executor(runtime, reproducibility_runs=2).run(make_params())

        assert len(runtime.docker_runs()) == 2
        assert outcome.hashes == [compute_executable_hash(ARTIFACT)] * 2

    @pytest.mark.asyncio
    async def test_divergent_runs_are_non_deterministic(self, make_executor):
        runtime = FakeRuntime(artifacts=(ARTIFACT, ARTIFACT + b"\x01"))
        with pytest.raises(NonDeterministicBuildError) as exc_info:
            await make_executor(runtime, reproducibility_runs=2).run(make_params())

        assert len(set(exc_info.value.hashes)) == 2
        assert exc_info.value.reason == BuildError.NON_DETERMINISTIC
