"""Destroy command execution.

One ``execute`` call owns one ``Execution`` record and runs up to
``retries + 1`` attempts. An attempt is::

    before_destroy hooks -> command -> after_destroy hooks

bounded as a whole by the project's timeout. Any failure runs the
``on_failure`` hooks. Commands run through the configured shell in their own
process group so a timeout or cancel can take down the whole tree.
"""

from __future__ import annotations

import asyncio
import os
import signal
from dataclasses import dataclass, field, replace
from pathlib import Path

from killall.core.errors import ExecutionError, NotFoundError, RepositoryError
from killall.core.notifier import NotificationEmitter
from killall.core.settings import ExecutorSettings
from killall.db.repository import ExecutionRepository
from killall.logging_config import get_logger, mask_environment
from killall.models.events import EventType, NotificationType
from killall.models.execution import Execution, ExecutionStatus
from killall.models.project import Project

logger = get_logger(__name__)

TIMEOUT_EXIT_CODE = 124
SPAWN_ERROR_EXIT_CODE = -1
_READ_CHUNK = 65536
_GROUP_POLL_INTERVAL = 0.05
_TRUNCATION_NOTE = "\n[output truncated]\n"


class _AttemptCancelled(Exception):
    def __init__(self, exit_code: int | None) -> None:
        super().__init__("execution cancelled")
        self.exit_code = exit_code


class _OutputBuffer:
    """Keep at most ``limit`` bytes of a stream; remember whether more arrived."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self.truncated = False

    def append(self, data: bytes) -> None:
        if self.truncated:
            return
        room = self._limit - self._size
        if len(data) > room:
            data = data[:room]
            self.truncated = True
        self._chunks.append(data)
        self._size += len(data)

    def text(self) -> str:
        content = b"".join(self._chunks).decode("utf-8", errors="replace")
        return content + _TRUNCATION_NOTE if self.truncated else content


@dataclass(slots=True)
class _Running:
    execution: Execution
    stdout: _OutputBuffer
    stderr: _OutputBuffer
    process: asyncio.subprocess.Process | None = None
    cancel_requested: bool = False
    created: bool = False
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass(slots=True)
class ExecutorStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    cancelled: int = 0
    attempts: int = 0


class Executor:
    """Run destroy commands with retries, hooks and timeout enforcement."""

    def __init__(
        self,
        settings: ExecutorSettings,
        *,
        executions: ExecutionRepository | None = None,
        notifier: NotificationEmitter | None = None,
    ) -> None:
        self._settings = settings
        self._executions = executions
        self._notifier = notifier or NotificationEmitter()
        self._running: dict[str, _Running] = {}
        self._stats = ExecutorStats()

    @property
    def settings(self) -> ExecutorSettings:
        return self._settings

    def stats(self) -> ExecutorStats:
        return replace(self._stats)

    def get_running(self) -> list[Execution]:
        return [running.execution for running in self._running.values()]

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._running

    async def execute(self, project: Project, execution: Execution | None = None) -> Execution:
        """Run the project's destroy sequence to a terminal ``Execution``.

        Command failures are encoded in the returned record, never raised.
        """
        execution = execution or Execution(project_id=project.id)
        running = _Running(
            execution=execution,
            stdout=_OutputBuffer(self._settings.max_output_bytes),
            stderr=_OutputBuffer(self._settings.max_output_bytes),
        )
        self._running[execution.id] = running
        self._stats.total += 1
        await self._save(running)

        max_attempts = project.config.execution.retries + 1
        status = ExecutionStatus.FAILED
        exit_code: int | None = None
        try:
            for attempt in range(1, max_attempts + 1):
                if running.cancel_requested:
                    status, exit_code = ExecutionStatus.CANCELLED, None
                    break

                execution.attempts = attempt
                execution.status = ExecutionStatus.RUNNING
                self._stats.attempts += 1
                await self._save(running)
                await self._notifier.emit(
                    EventType.EXECUTION_STARTED,
                    f"Destroying {project.display_name}",
                    f"Attempt {attempt} of {max_attempts} in {project.path}",
                    project_id=project.id,
                    execution_id=execution.id,
                )

                status, exit_code = await self._run_attempt(project, running, attempt)
                self._sync_output(running)
                await self._notifier.emit(
                    EventType.EXECUTION_COMPLETED,
                    f"Destroy attempt {attempt} {status.value}",
                    f"{project.display_name} exited with code {exit_code}",
                    kind=_notification_kind(status),
                    project_id=project.id,
                    execution_id=execution.id,
                )

                if status in {ExecutionStatus.COMPLETED, ExecutionStatus.CANCELLED}:
                    break
                if attempt < max_attempts:
                    logger.info(
                        "execution_retry_scheduled",
                        execution_id=execution.id,
                        project_id=project.id,
                        attempt=attempt,
                        backoff=self._settings.retry_backoff,
                    )
                    await self._backoff(running)
        except asyncio.CancelledError:
            status, exit_code = ExecutionStatus.CANCELLED, None
            raise
        finally:
            if running.cancel_requested and status is not ExecutionStatus.COMPLETED:
                status = ExecutionStatus.CANCELLED
            execution.finish(status, exit_code)
            self._sync_output(running)
            self._count(status)
            await self._save(running)
            self._running.pop(execution.id, None)
            running.done.set()

        logger.info(
            "execution_finished",
            execution_id=execution.id,
            project_id=project.id,
            status=execution.status.value,
            exit_code=execution.exit_code,
            attempts=execution.attempts,
            duration=execution.duration,
        )
        return execution

    async def cancel(self, execution_id: str) -> Execution:
        """Terminate a running execution; terminal executions are returned unchanged."""
        running = self._running.get(execution_id)
        if running is None:
            existing = await self._find(execution_id)
            if existing is None:
                msg = f"Execution not found: {execution_id}"
                raise NotFoundError(msg)
            return existing

        logger.info("execution_cancel_requested", execution_id=execution_id)
        running.cancel_requested = True
        running.wake.set()
        if running.process is not None:
            await self._terminate(running.process)
        await running.done.wait()
        return running.execution

    async def _run_attempt(
        self,
        project: Project,
        running: _Running,
        attempt: int,
    ) -> tuple[ExecutionStatus, int | None]:
        hooks = project.config.hooks
        timeout = project.config.timeout_ms / 1000
        if attempt > 1:
            header = f"\n--- attempt {attempt} ---\n".encode()
            running.stdout.append(header)
            running.stderr.append(header)

        try:
            async with asyncio.timeout(timeout):
                for hook in hooks.before_destroy:
                    await self._run_step(hook, project, running)
                if project.config.command:
                    await self._run_step(project.config.command, project, running)
                for hook in hooks.after_destroy:
                    await self._run_step(hook, project, running)
        except _AttemptCancelled as exc:
            return ExecutionStatus.CANCELLED, exc.exit_code
        except TimeoutError:
            logger.warning(
                "execution_timeout",
                execution_id=running.execution.id,
                project_id=project.id,
                timeout=project.config.timeout,
            )
            running.stderr.append(f"\nTimed out after {project.config.timeout}\n".encode())
            await self._run_failure_hooks(project, running, timeout)
            return ExecutionStatus.TIMEOUT, TIMEOUT_EXIT_CODE
        except ExecutionError as exc:
            logger.warning(
                "execution_step_failed",
                execution_id=running.execution.id,
                project_id=project.id,
                exit_code=exc.exit_code,
                error=str(exc),
            )
            await self._run_failure_hooks(project, running, timeout)
            return ExecutionStatus.FAILED, exc.exit_code

        return ExecutionStatus.COMPLETED, 0

    async def _run_failure_hooks(self, project: Project, running: _Running, timeout: float) -> None:
        if not project.config.hooks.on_failure or running.cancel_requested:
            return
        try:
            async with asyncio.timeout(timeout):
                for hook in project.config.hooks.on_failure:
                    await self._run_step(hook, project, running)
        except (ExecutionError, TimeoutError, _AttemptCancelled) as exc:
            logger.warning(
                "on_failure_hook_failed",
                execution_id=running.execution.id,
                project_id=project.id,
                error=str(exc) or type(exc).__name__,
            )

    async def _run_step(self, command: str, project: Project, running: _Running) -> None:
        if running.cancel_requested:
            raise _AttemptCancelled(None)

        options = project.config.execution
        shell = options.shell or self._settings.default_shell
        cwd = project.path / options.working_directory if options.working_directory else project.path
        environment = {**self._settings.environment, **options.environment}
        running.stdout.append(f"$ {command}\n".encode())

        logger.debug(
            "execution_step_started",
            execution_id=running.execution.id,
            command=command,
            shell=shell,
            cwd=str(cwd),
            environment=mask_environment(environment),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *_shell_argv(shell, command),
                cwd=cwd,
                env=environment,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            running.stderr.append(f"{exc}\n".encode())
            msg = f"Failed to start '{command}': {exc}"
            raise ExecutionError(msg, SPAWN_ERROR_EXIT_CODE) from exc

        running.process = process
        if running.cancel_requested:
            await self._terminate(process)
        readers = [
            asyncio.create_task(_drain(process.stdout, running.stdout)),
            asyncio.create_task(_drain(process.stderr, running.stderr)),
        ]
        try:
            returncode = await process.wait()
            await asyncio.gather(*readers)
        except BaseException:
            # the shell may be gone while backgrounded children still hold the pipes
            await self._terminate(process)
            raise
        finally:
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            running.process = None
            self._sync_output(running)

        if running.cancel_requested:
            raise _AttemptCancelled(returncode)
        if returncode != 0:
            msg = f"Command failed with exit code {returncode}: {command}"
            raise ExecutionError(msg, returncode)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, escalating to SIGKILL after the grace period.

        The group is signalled even when the shell itself has already exited;
        only an empty group counts as terminated.
        """
        if not _signal_group(process, signal.SIGTERM):
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.kill_grace_period
        while loop.time() < deadline:
            if process.returncode is not None and not _group_alive(process):
                return
            await asyncio.sleep(_GROUP_POLL_INTERVAL)
        logger.warning("execution_kill_escalated", pid=process.pid)
        _signal_group(process, signal.SIGKILL)
        if process.returncode is None:
            await process.wait()

    async def _backoff(self, running: _Running) -> None:
        try:
            await asyncio.wait_for(running.wake.wait(), self._settings.retry_backoff)
        except TimeoutError:
            pass

    async def _save(self, running: _Running) -> None:
        # the in-memory record stays authoritative; a failed write is retried on the next save
        if self._executions is None:
            return
        try:
            if running.created:
                await self._executions.update_execution(running.execution)
            else:
                await self._executions.create_execution(running.execution)
                running.created = True
        except RepositoryError as exc:
            logger.warning(
                "execution_persist_failed",
                execution_id=running.execution.id,
                error=str(exc),
            )

    async def _find(self, execution_id: str) -> Execution | None:
        if self._executions is None:
            return None
        return await self._executions.get_execution(execution_id)

    def _count(self, status: ExecutionStatus) -> None:
        if status is ExecutionStatus.COMPLETED:
            self._stats.completed += 1
        elif status is ExecutionStatus.TIMEOUT:
            self._stats.timed_out += 1
        elif status is ExecutionStatus.CANCELLED:
            self._stats.cancelled += 1
        else:
            self._stats.failed += 1

    @staticmethod
    def _sync_output(running: _Running) -> None:
        running.execution.stdout = running.stdout.text()
        running.execution.stderr = running.stderr.text()
        running.execution.output_truncated = running.stdout.truncated or running.stderr.truncated


async def _drain(stream: asyncio.StreamReader | None, buffer: _OutputBuffer) -> None:
    if stream is None:
        return
    while chunk := await stream.read(_READ_CHUNK):
        buffer.append(chunk)


def _shell_argv(shell: str, command: str) -> list[str]:
    if Path(shell).name.lower() in {"cmd", "cmd.exe"}:
        return [shell, "/c", command]
    return [shell, "-c", command]


def _signal_group(process: asyncio.subprocess.Process, signum: signal.Signals) -> bool:
    """Signal the command's process group; ``False`` when nothing was left to signal."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signum)
        elif signum == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except ProcessLookupError:
        return False
    return True


def _group_alive(process: asyncio.subprocess.Process) -> bool:
    if not hasattr(os, "killpg"):
        return process.returncode is None
    try:
        os.killpg(process.pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _notification_kind(status: ExecutionStatus) -> NotificationType:
    if status is ExecutionStatus.COMPLETED:
        return NotificationType.SUCCESS
    if status is ExecutionStatus.CANCELLED:
        return NotificationType.WARNING
    return NotificationType.ERROR
