"""
Build Executor

Rebuilds one program inside a disposable container:

1. Clone the repository (pinned to the commit when given) into a fresh
   temporary directory.
2. docker run --rm with CPU/memory/pid limits, the checkout mounted at
   /build and the working directory set to /build/<mount_path>.
3. Run ``cargo build-sbf`` (``cargo build-bpf`` when bpf_flag is set) with the
   request's cargo args.
4. Hash target/deploy/<lib>.so with the same function used for deployed bytes.

Every build has a hard wall-clock timeout and an output ceiling; exceeding
either kills the container and raises BuildError. A global semaphore caps the
number of simultaneous builds on the host.
"""

import asyncio
import os
import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from loguru import logger

from verified_programs.core.config import settings
from verified_programs.core.errors import BuildError, NonDeterministicBuildError
from verified_programs.models.schemas import BuildParams
from verified_programs.utils.hashing import compute_executable_hash

CONTAINER_SOURCE_DIR = "/build"
KILL_TIMEOUT_SECONDS = 30


@dataclass
class BuildOutcome:
    """Result of a successful build."""
    executable_hash: str
    exit_code: int
    log_excerpt: str
    duration_seconds: float
    hashes: List[str] = field(default_factory=list)


class _OutputLimitExceeded(Exception):
    pass


class _OutputCollector:
    """Counts combined process output and keeps its tail for diagnostics."""

    def __init__(self, max_bytes: int, excerpt_bytes: int):
        self.max_bytes = max_bytes
        self.excerpt_bytes = excerpt_bytes
        self.total = 0
        self._tail = b""

    def feed(self, chunk: bytes):
        self.total += len(chunk)
        self._tail = (self._tail + chunk)[-self.excerpt_bytes:]
        if self.total > self.max_bytes:
            raise _OutputLimitExceeded()

    def excerpt(self) -> str:
        return self._tail.decode("utf-8", errors="replace")


def normalize_clone_url(repository: str) -> str:
    """``github.com/org/repo`` -> ``https://github.com/org/repo``"""
    return repository if "://" in repository else f"https://{repository}"


class DockerBuildExecutor:
    """Runs reproducible builds through the docker CLI."""

    def __init__(
        self,
        docker_binary: Optional[str] = None,
        git_binary: Optional[str] = None,
        default_image: Optional[str] = None,
        workdir: Optional[str] = None,
        build_timeout: Optional[float] = None,
        checkout_timeout: Optional[float] = None,
        max_log_bytes: Optional[int] = None,
        max_artifact_bytes: Optional[int] = None,
        max_concurrent_builds: Optional[int] = None,
        queue_timeout: Optional[float] = None,
        reproducibility_runs: Optional[int] = None,
        metrics=None,
    ):
        self.docker_binary = docker_binary or settings.DOCKER_BINARY
        self.git_binary = git_binary or settings.GIT_BINARY
        self.default_image = default_image or settings.DEFAULT_BASE_IMAGE
        self.workdir = workdir or settings.BUILD_WORKDIR
        self.build_timeout = build_timeout or settings.BUILD_TIMEOUT_SECONDS
        self.checkout_timeout = checkout_timeout or settings.CHECKOUT_TIMEOUT_SECONDS
        self.max_log_bytes = max_log_bytes or settings.BUILD_MAX_LOG_BYTES
        self.max_artifact_bytes = max_artifact_bytes or settings.BUILD_MAX_ARTIFACT_BYTES
        self.queue_timeout = queue_timeout if queue_timeout is not None else settings.BUILD_QUEUE_TIMEOUT_SECONDS
        self.reproducibility_runs = reproducibility_runs or settings.BUILD_REPRODUCIBILITY_RUNS
        self.excerpt_bytes = settings.LOG_EXCERPT_BYTES
        self.metrics = metrics
        self._slots = asyncio.Semaphore(max_concurrent_builds or settings.MAX_CONCURRENT_BUILDS)

    async def run(self, build: BuildParams) -> BuildOutcome:
        """
        Build ``build`` and return the executable hash.

        With more than one reproducibility run the build is repeated in fresh
        checkouts and all hashes must agree.

        Raises:
            BuildError: checkout, toolchain, artifact, timeout, output limit,
                or resource exhaustion (retryable)
            NonDeterministicBuildError: repeated builds disagreed
        """
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self.queue_timeout)
        except asyncio.TimeoutError:
            self._record(BuildError.RESOURCE_EXHAUSTED)
            raise BuildError(
                BuildError.RESOURCE_EXHAUSTED,
                f"No build slot became free within {self.queue_timeout}s",
            )

        started = time.monotonic()
        if self.metrics:
            self.metrics.builds_in_flight.inc()
        try:
            outcomes = []
            for run_index in range(self.reproducibility_runs):
                outcomes.append(await self._build_once(build, run_index))

            hashes = [o.executable_hash for o in outcomes]
            if len(set(hashes)) > 1:
                logger.warning(f"Non-deterministic build for {build.program_id}: {hashes}")
                raise NonDeterministicBuildError(hashes)

            outcome = outcomes[-1]
            outcome.hashes = hashes
            outcome.duration_seconds = time.monotonic() - started
            self._record("success", outcome.duration_seconds)
            logger.info(
                f"Built {build.program_id} in {outcome.duration_seconds:.1f}s: {outcome.executable_hash}"
            )
            return outcome
        except BuildError as e:
            self._record(e.reason, time.monotonic() - started)
            raise
        finally:
            if self.metrics:
                self.metrics.builds_in_flight.dec()
            self._slots.release()

    # =========================================================================
    # One build
    # =========================================================================

    async def _build_once(self, build: BuildParams, run_index: int) -> BuildOutcome:
        os.makedirs(self.workdir, exist_ok=True)
        checkout_dir = tempfile.mkdtemp(prefix=f"build-{build.program_id[:8]}-", dir=self.workdir)
        started = time.monotonic()
        try:
            await self._checkout(build, checkout_dir)

            container_name = f"verify-{build.program_id[:12].lower()}-{uuid.uuid4().hex[:8]}"
            command = self.container_command(build, checkout_dir, container_name)
            logger.info(f"Starting build {container_name} (run {run_index + 1}/{self.reproducibility_runs})")

            exit_code, excerpt = await self._run(command, self.build_timeout, container_name=container_name)
            if exit_code != 0:
                raise BuildError(
                    BuildError.TOOLCHAIN_FAILED,
                    f"Build command exited with status {exit_code}",
                    exit_code=exit_code,
                    log_excerpt=excerpt,
                )

            artifact = self._locate_artifact(build, checkout_dir, excerpt)
            size = os.path.getsize(artifact)
            if size > self.max_artifact_bytes:
                raise BuildError(
                    BuildError.OUTPUT_LIMIT,
                    f"Executable is {size} bytes, above the {self.max_artifact_bytes} byte limit",
                    exit_code=exit_code,
                    log_excerpt=excerpt,
                )
            with open(artifact, "rb") as f:
                executable_hash = compute_executable_hash(f.read())

            return BuildOutcome(
                executable_hash=executable_hash,
                exit_code=exit_code,
                log_excerpt=excerpt,
                duration_seconds=time.monotonic() - started,
            )
        finally:
            shutil.rmtree(checkout_dir, ignore_errors=True)

    async def _checkout(self, build: BuildParams, checkout_dir: str):
        url = normalize_clone_url(build.repository)
        if build.commit_hash:
            steps = [
                [self.git_binary, "clone", "--quiet", "--no-checkout", url, checkout_dir],
                [self.git_binary, "-C", checkout_dir, "checkout", "--quiet", build.commit_hash],
            ]
        else:
            steps = [[self.git_binary, "clone", "--quiet", "--depth", "1", url, checkout_dir]]

        for args in steps:
            exit_code, excerpt = await self._run(args, self.checkout_timeout)
            if exit_code != 0:
                raise BuildError(
                    BuildError.CHECKOUT_FAILED,
                    f"Could not check out {url} at {build.commit_hash or 'HEAD'}",
                    exit_code=exit_code,
                    log_excerpt=excerpt,
                )

    def container_command(self, build: BuildParams, checkout_dir: str, container_name: str) -> List[str]:
        """docker run argument vector for one build."""
        workdir = CONTAINER_SOURCE_DIR
        if build.mount_path:
            workdir = f"{CONTAINER_SOURCE_DIR}/{build.mount_path}"

        toolchain = ["cargo", "build-bpf" if build.bpf_flag else "build-sbf"]
        return [
            self.docker_binary, "run", "--rm",
            "--name", container_name,
            "--cpus", str(settings.BUILD_CPUS),
            "--memory", str(settings.BUILD_MEMORY),
            "--pids-limit", str(settings.BUILD_PIDS_LIMIT),
            "--security-opt", "no-new-privileges",
            "-v", f"{os.path.abspath(checkout_dir)}:{CONTAINER_SOURCE_DIR}",
            "-w", workdir,
            build.base_image or self.default_image,
            *toolchain,
            *build.build_args,
        ]

    def _locate_artifact(self, build: BuildParams, checkout_dir: str, excerpt: str) -> str:
        deploy_dir = os.path.join(checkout_dir, build.mount_path or "", "target", "deploy")
        if build.lib_name:
            # cargo writes crate names with underscores
            artifact = os.path.join(deploy_dir, f"{build.lib_name.replace('-', '_')}.so")
            if os.path.isfile(artifact):
                return artifact
            raise BuildError(
                BuildError.ARTIFACT_MISSING,
                f"Build produced no {os.path.basename(artifact)}",
                exit_code=0,
                log_excerpt=excerpt,
            )

        candidates = []
        if os.path.isdir(deploy_dir):
            candidates = sorted(name for name in os.listdir(deploy_dir) if name.endswith(".so"))
        if len(candidates) != 1:
            raise BuildError(
                BuildError.ARTIFACT_MISSING,
                f"Expected one executable in target/deploy, found {len(candidates)}; set lib_name",
                exit_code=0,
                log_excerpt=excerpt,
            )
        return os.path.join(deploy_dir, candidates[0])

    # =========================================================================
    # Process handling
    # =========================================================================

    async def _run(
        self, args: List[str], timeout: float, container_name: Optional[str] = None
    ) -> Tuple[int, str]:
        """Run a process with merged output, a timeout and an output ceiling."""
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            kind = BuildError.RESOURCE_EXHAUSTED if container_name else BuildError.CHECKOUT_FAILED
            raise BuildError(kind, f"Could not start {args[0]}: {e}")

        collector = _OutputCollector(self.max_log_bytes, self.excerpt_bytes)
        try:
            await asyncio.wait_for(self._drain(process, collector), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{args[0]} exceeded {timeout}s, terminating")
            await self._terminate(process, container_name)
            raise BuildError(
                BuildError.TIMEOUT,
                f"Build exceeded the {timeout}s limit",
                log_excerpt=collector.excerpt(),
            )
        except _OutputLimitExceeded:
            logger.warning(f"{args[0]} exceeded {self.max_log_bytes} bytes of output, terminating")
            await self._terminate(process, container_name)
            raise BuildError(
                BuildError.OUTPUT_LIMIT,
                f"Build output exceeded {self.max_log_bytes} bytes",
                log_excerpt=collector.excerpt(),
            )
        except asyncio.CancelledError:
            await self._terminate(process, container_name)
            raise

        return process.returncode, collector.excerpt()

    @staticmethod
    async def _drain(process, collector: _OutputCollector):
        while True:
            chunk = await process.stdout.read(65536)
            if not chunk:
                break
            collector.feed(chunk)
        await process.wait()

    async def _terminate(self, process, container_name: Optional[str]):
        if container_name:
            try:
                killer = await asyncio.create_subprocess_exec(
                    self.docker_binary, "kill", container_name,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
                await asyncio.wait_for(killer.wait(), timeout=KILL_TIMEOUT_SECONDS)
            except (OSError, asyncio.TimeoutError) as e:
                logger.error(f"Failed to kill container {container_name}: {e}")

        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    def _record(self, outcome: str, duration: Optional[float] = None):
        if self.metrics:
            self.metrics.record_build(outcome, duration)
