"""Compile-and-run tester for Rust artifacts.

``RustTester`` writes the artifact to a throwaway directory, compiles it with
``rustc --test`` and runs the resulting test binary. Both steps have their
own timeout. Failures of any kind (compile errors, failing tests, timeouts,
a missing compiler) come back as ``TestResult(passed=False)`` carrying the
raw diagnostic; the tester never raises for them and never modifies the
artifact.
"""

import asyncio
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from models.schemas import Artifact, TestResult

logger = structlog.get_logger()

# Exit status of a Rust test binary when at least one test failed
RUST_TEST_FAILURE_EXIT = 101


class Tester(Protocol):
    """Anything that can build and run an artifact's embedded tests."""

    async def run(self, artifact: Artifact) -> TestResult: ...


@dataclass
class CommandResult:
    """Result of running one subprocess."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


def sanitize_output(output: str, max_length: int = 50000) -> str:
    """Truncate excessively long process output."""
    if not output:
        return ""

    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = output[:max_length] + f"\n... [truncated, {truncated_chars} chars omitted]"

    return output


async def run_command(args: list[str], timeout: float, cwd: Path | None = None) -> CommandResult:
    """Run ``args`` and capture its output, killing it after ``timeout`` seconds.

    Raises:
        FileNotFoundError: If the executable does not exist.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("command_timeout", command=args[0], timeout=timeout)
        return CommandResult(
            stdout="",
            stderr=f"Command timed out after {timeout} seconds",
            exit_code=124,
            timed_out=True,
        )
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    return CommandResult(
        stdout=sanitize_output(stdout.decode("utf-8", errors="replace")),
        stderr=sanitize_output(stderr.decode("utf-8", errors="replace")),
        exit_code=process.returncode if process.returncode is not None else -1,
    )


class RustTester:
    """Builds an artifact with ``rustc --test`` and runs the test binary.

    Attributes:
        rustc_path: Compiler executable
        timeout_seconds: Limit applied separately to compiling and to running
    """

    SOURCE_NAME = "code.rs"
    BINARY_NAME = "test"

    def __init__(self, rustc_path: str = "rustc", timeout_seconds: float = 60.0) -> None:
        self.rustc_path = rustc_path
        self.timeout_seconds = timeout_seconds

    async def run(self, artifact: Artifact) -> TestResult:
        with tempfile.TemporaryDirectory(prefix="critic_loop_") as tmp:
            workdir = Path(tmp)
            source = workdir / self.SOURCE_NAME
            binary = workdir / self.BINARY_NAME
            source.write_text(artifact.code, encoding="utf-8")

            try:
                compiled = await run_command(
                    [self.rustc_path, "--test", "-o", str(binary), str(source)],
                    timeout=self.timeout_seconds,
                    cwd=workdir,
                )
            except FileNotFoundError:
                logger.error("compiler_not_found", rustc_path=self.rustc_path)
                return TestResult(
                    passed=False,
                    diagnostic=f"Compiler not found: {self.rustc_path}",
                )

            if compiled.timed_out:
                return TestResult(passed=False, diagnostic=compiled.stderr, timed_out=True)
            if compiled.exit_code != 0:
                logger.info(
                    "compile_failed",
                    revision=artifact.revision,
                    exit_code=compiled.exit_code,
                )
                return TestResult(
                    passed=False,
                    diagnostic=f"Fix the following compilation error:\n{compiled.stderr}",
                )

            executed = await run_command([str(binary)], timeout=self.timeout_seconds, cwd=workdir)

        if executed.timed_out:
            return TestResult(passed=False, diagnostic=executed.stderr, timed_out=True)
        if executed.exit_code == 0:
            logger.info("tests_passed", revision=artifact.revision)
            return TestResult(passed=True)

        logger.info(
            "tests_failed",
            revision=artifact.revision,
            exit_code=executed.exit_code,
        )
        if executed.exit_code == RUST_TEST_FAILURE_EXIT:
            diagnostic = f"Fix the following test error:\n{executed.stdout}"
        else:
            diagnostic = (
                f"Test binary exited with unexpected code {executed.exit_code}.\n"
                f"stdout:\n{executed.stdout}\nstderr:\n{executed.stderr}"
            )
        return TestResult(passed=False, diagnostic=diagnostic)
