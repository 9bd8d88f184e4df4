"""
Sandbox orchestration for staged wrapper scripts.

A worker is an isolated Python interpreter, either a Docker container or a
local process. It fetches a staged script by URL and reports back with exactly
one message on its stdout. The orchestrator waits a bounded time for that
message and always terminates the worker afterwards.

Only the container backend confines hostile code. The process backend relies
on an in-interpreter audit hook, which code able to build its own bytecode can
get around, so it is meant for development and trusted submissions.
"""

import asyncio
import json
import logging
import os
import resource
import secrets
import signal
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import docker
import docker.errors

from evaluator.models import Outcome

logger = logging.getLogger(__name__)

PERMISSION_NAMES = ("network", "environment", "read", "write", "run")

# Interpreter-side half of the worker. The parent process fetches the
# wrapper, then forks. The child drops the host's stdout, locks itself down
# with an audit hook and runs the wrapper, which hands its single result back
# over a pipe. Only the parent writes to stdout, and it reads the channel from
# argv only after the fork.
BOOTSTRAP = r'''
import ast, asyncio, builtins, inspect, json, logging, math, os, sys, time, types
import urllib.request

NETWORK = frozenset({
    "socket.connect", "socket.bind", "socket.sendto", "socket.sendmsg",
    "socket.getaddrinfo", "socket.gethostbyname", "socket.gethostbyname_ex",
    "socket.gethostbyaddr", "socket.getnameinfo",
})
RUN = frozenset({
    "subprocess.Popen", "os.system", "os.exec", "os.spawn", "os.posix_spawn",
    "os.fork", "os.forkpty", "os.kill", "os.killpg", "pty.spawn", "os.startfile",
    "signal.pthread_kill",
})
WRITE = frozenset({
    "os.remove", "os.rename", "os.rmdir", "os.mkdir", "os.symlink", "os.link",
    "os.chmod", "os.chown", "os.chflags", "os.truncate", "os.utime",
    "os.mkfifo", "os.mknod", "shutil.rmtree", "shutil.move", "shutil.copyfile",
    "shutil.copytree", "shutil.chown", "shutil.make_archive", "shutil.unpack_archive",
})
LIST = frozenset({"os.listdir", "os.scandir"})
INTROSPECTION = frozenset({
    "gc.get_objects", "gc.get_referrers", "gc.get_referents",
    "sys._getframe", "sys._current_frames", "sys._current_exceptions",
    "sys.settrace", "sys.setprofile", "code.__new__",
})
FRAME_ATTRS = frozenset({"tb_frame", "gi_frame", "cr_frame", "ag_frame", "f_back"})
FUNCTION_ATTRS = frozenset({"__code__", "__defaults__", "__kwdefaults__"})
WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC


def interpreter_roots():
    roots = set()
    for entry in [sys.prefix, sys.base_prefix, sys.exec_prefix, sys.base_exec_prefix] + sys.path:
        if entry and os.path.isabs(entry) and os.path.exists(entry):
            root = os.path.normpath(entry)
            if root != "/":
                roots.add(root)
    return tuple(sorted(roots))


def make_guard(granted, roots):
    # Everything the guard consults is bound as a default argument: it reads
    # no globals, no builtins and no closure cells.
    def guard(event, args, network="network" in granted, read="read" in granted,
              write="write" in granted, run="run" in granted, roots=roots,
              getcwd=os.getcwd, length=len, type_of=type, str_type=str,
              bytes_type=bytes, int_type=int, error=PermissionError,
              network_events=NETWORK, run_events=RUN, write_events=WRITE,
              list_events=LIST, introspection=INTROSPECTION,
              frame_attrs=FRAME_ATTRS, function_attrs=FUNCTION_ATTRS,
              function_type=types.FunctionType, write_flags=WRITE_FLAGS):
        if event in introspection or event[:7] == "ctypes.":
            raise error("sandbox: %s is not permitted" % event)
        if event == "object.__getattr__":
            if args[1] in frame_attrs:
                raise error("sandbox: reading %s is not permitted" % args[1])
            return
        if event == "object.__setattr__" or event == "object.__delattr__":
            if (args[1] in function_attrs and type_of(args[0]) is function_type
                    and args[0].__code__.co_name == "guard"):
                raise error("sandbox: replacing %s is not permitted" % args[1])
            return
        if event in network_events:
            if not network:
                raise error("sandbox: %s is not permitted" % event)
            return
        if event in run_events:
            if not run:
                raise error("sandbox: %s is not permitted" % event)
            return
        if event in write_events:
            if not write:
                raise error("sandbox: %s is not permitted" % event)
            return
        if event == "os.chdir":
            if not read:
                raise error("sandbox: os.chdir is not permitted")
            return

        if event == "open":
            path, mode, flags = (args + (None, None, None))[:3]
            if type_of(mode) is str_type:
                writing = "w" in mode or "a" in mode or "x" in mode or "+" in mode
            else:
                writing = type_of(flags) is int_type and (flags & write_flags) != 0
            if writing:
                if not write:
                    raise error("sandbox: writing files is not permitted")
                return
        elif event in list_events:
            path = args[0] if args else None
            if path is None:
                path = "."
        else:
            return

        if read or type_of(path) is int_type:
            return
        if type_of(path) is bytes_type:
            path = path.decode("utf-8", "surrogateescape")
        if type_of(path) is not str_type:
            raise error("sandbox: reading from non-string paths is not permitted")
        if path[:1] != "/":
            path = getcwd() + "/" + path
        parts = []
        for part in path.split("/"):
            if part == "..":
                raise error("sandbox: reading %r is not permitted" % path)
            if part and part != ".":
                parts.append(part)
        path = "/" + "/".join(parts)
        for root in roots:
            if path == root or path[:length(root) + 1] == root + "/":
                return
        raise error("sandbox: reading %r is not permitted" % path)

    return guard


def post_to_host(payload):
    """Write one channel line to the host. Parent process only."""
    data = b"\n@@" + sys.argv[2].encode("ascii") + b"@@" + payload + b"\n"
    while data:
        data = data[os.write(1, data):]


def run_sandboxed(program, writer, granted, roots):
    """Child process: lock the interpreter down and run the wrapper."""
    os.dup2(2, 1)
    del sys.argv[1:]
    sys.orig_argv.clear()
    sent = []

    def post_message(message):
        if sent:
            return False
        sent.append(True)
        data = (json.dumps(message, allow_nan=False) + "\n").encode("utf-8")
        while data:
            data = data[os.write(writer, data):]
        return True

    def close():
        for stream in (sys.stdout, sys.stderr):
            try:
                stream.flush()
            except Exception:
                pass
        os._exit(0)

    if "environment" not in granted:
        os.environ.clear()
        os.environb.clear()
        sys.modules["posix"].environ.clear()
    sys.modules.pop("__main__", None)
    sys.addaudithook(make_guard(granted, roots))

    try:
        exec(program, {"__name__": "__sandbox__", "post_message": post_message, "close": close})
    except BaseException as exc:
        post_message({"type": "error", "data": "Wrapper failed: %s: %s" % (type(exc).__name__, exc)})
    finally:
        close()


def relay_result(pid, reader):
    """Parent process: forward the child's single result line, or a failure."""
    with os.fdopen(reader, "rb") as stream:
        lines = [line for line in stream.read().split(b"\n") if line.strip()]
    _, status = os.waitpid(pid, 0)

    if len(lines) == 1:
        try:
            if isinstance(json.loads(lines[0]), dict):
                post_to_host(lines[0])
                return
        except ValueError:
            pass
    if lines:
        message = {"type": "invalid", "data": "Sandbox sent %d unusable result lines" % len(lines)}
    else:
        code = os.waitstatus_to_exitcode(status)
        message = {"type": "exit", "data": "Sandbox exited with status %d without a result" % code}
    post_to_host(json.dumps(message).encode("utf-8"))


url, granted = sys.argv[1], frozenset(json.loads(sys.argv[3]))
try:
    with urllib.request.urlopen(url, timeout=10) as response:
        program = compile(response.read().decode("utf-8"), "<wrapper>", "exec")
except Exception as exc:
    error = "Could not load script: %s: %s" % (type(exc).__name__, exc)
    post_to_host(json.dumps({"type": "error", "data": error}).encode("utf-8"))
else:
    roots = interpreter_roots()
    reader, writer = os.pipe()
    pid = os.fork()
    if pid == 0:
        os.close(reader)
        run_sandboxed(program, writer, granted, roots)
    os.close(writer)
    relay_result(pid, reader)
'''


class SandboxError(Exception):
    """Base exception for sandbox errors."""
    pass


class SandboxLaunchError(SandboxError):
    """Raised when a worker cannot be started."""
    pass


class SandboxTimeoutError(SandboxError):
    """Raised when a worker does not report within the timeout."""
    pass


class SandboxProtocolError(SandboxError):
    """Raised when a worker cannot be driven at all."""
    pass


class WorkerState(Enum):
    CREATED = "created"
    AWAITING_RESULT = "awaiting_result"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class Permissions:
    """Capabilities granted to the code running in a worker."""
    network: bool = True
    environment: bool = True
    read: bool = False
    write: bool = False
    run: bool = False

    @classmethod
    def from_names(cls, names: List[str]) -> 'Permissions':
        unknown = set(names) - set(PERMISSION_NAMES)
        if unknown:
            raise ValueError(f"Unknown sandbox permissions: {', '.join(sorted(unknown))}")
        return cls(**{name: name in names for name in PERMISSION_NAMES})

    def granted(self) -> List[str]:
        return [name for name in PERMISSION_NAMES if getattr(self, name)]

    def to_json(self) -> str:
        return json.dumps(self.granted())


class Worker:
    """
    Handle for one isolated execution context.

    A worker is bound to a single script URL, delivers at most one message
    and is never reused. Subclasses implement ``start`` and ``terminate`` for
    a concrete isolation primitive.
    """

    backend = "base"

    def __init__(
        self,
        permissions: Optional[Permissions] = None,
        python: str = "python",
        max_message_bytes: int = 8 * 1024 * 1024
    ):
        self.worker_id: str = str(uuid.uuid4())[:8]
        self.channel: str = secrets.token_hex(16)
        self.permissions = permissions or Permissions()
        self.python = python
        self.max_message_bytes = max_message_bytes
        self.state = WorkerState.CREATED
        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=1)

    @property
    def marker(self) -> str:
        return f"@@{self.channel}@@"

    def command(self, script_url: str) -> List[str]:
        """Interpreter command line that boots the worker."""
        return [
            self.python, "-I", "-B", "-u", "-X", "utf8",
            "-c", BOOTSTRAP,
            script_url, self.channel, self.permissions.to_json(),
        ]

    async def start(self, script_url: str) -> None:
        raise NotImplementedError

    async def terminate(self) -> None:
        raise NotImplementedError

    async def receive(self, timeout: float) -> Any:
        """
        Wait for the worker's single message.

        Raises:
            SandboxTimeoutError: If nothing arrives within ``timeout`` seconds
        """
        self.state = WorkerState.AWAITING_RESULT
        try:
            message = await asyncio.wait_for(self._inbox.get(), timeout)
        except asyncio.TimeoutError:
            self.state = WorkerState.TIMED_OUT
            raise SandboxTimeoutError(f"Execution exceeded timeout ({timeout}s)") from None
        self.state = WorkerState.RESOLVED
        return message

    def _feed(self, raw: bytes) -> None:
        """Route one line of worker output."""
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if self.marker in line:
            payload = line.split(self.marker, 1)[1]
            try:
                message = json.loads(payload)
            except ValueError:
                message = {"type": "invalid", "data": payload[:200]}
            self._deliver(message)
        elif line:
            logger.debug(f"worker-{self.worker_id}: {line}")

    def _deliver(self, message: Any) -> None:
        if self._inbox.full() or self.state in (WorkerState.RESOLVED, WorkerState.TERMINATED):
            logger.debug(f"worker-{self.worker_id}: dropping extra message")
            return
        self._inbox.put_nowait(message)

    def _overflow(self) -> None:
        self._deliver({
            "type": "overflow",
            "data": f"Worker output line exceeded {self.max_message_bytes} bytes",
        })

    def _ended(self, detail: str = "") -> None:
        self._deliver({"type": "exit", "data": f"Worker output ended without a result{detail}"})


class ProcessWorker(Worker):
    """Worker running as a local interpreter process in its own session."""

    backend = "process"

    def __init__(
        self,
        permissions: Optional[Permissions] = None,
        python: str = "python",
        memory_limit_mb: int = 512,
        cpu_seconds: int = 30,
        environment: Optional[Dict[str, str]] = None,
        max_message_bytes: int = 8 * 1024 * 1024
    ):
        super().__init__(permissions, python, max_message_bytes)
        self.memory_limit_mb = memory_limit_mb
        self.cpu_seconds = cpu_seconds
        self.environment = {
            "PATH": os.environ.get("PATH", os.defpath),
            "LANG": "C.UTF-8",
            **(environment or {}),
        }
        self.process: Optional[asyncio.subprocess.Process] = None
        self._readers: List[asyncio.Task] = []

    def _apply_limits(self) -> None:
        """Runs in the child before exec."""
        memory_bytes = self.memory_limit_mb * 1024 * 1024
        limits = [
            (resource.RLIMIT_CPU, self.cpu_seconds),
            (resource.RLIMIT_AS, memory_bytes),
            (resource.RLIMIT_CORE, 0),
        ]
        for limit, value in limits:
            try:
                resource.setrlimit(limit, (value, value))
            except (ValueError, OSError):
                pass  # May fail on some systems

    async def start(self, script_url: str) -> None:
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command(script_url),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.environment,
                cwd="/",
                start_new_session=True,
                preexec_fn=self._apply_limits,
                limit=self.max_message_bytes,
            )
        except (OSError, ValueError) as e:
            self.state = WorkerState.TERMINATED
            raise SandboxLaunchError(f"Failed to start worker process: {e}") from e

        logger.info(f"Worker-{self.worker_id} started (pid={self.process.pid})")
        self._readers = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]

    async def _read_stdout(self) -> None:
        stream = self.process.stdout
        while True:
            try:
                line = await stream.readline()
            except (asyncio.LimitOverrunError, ValueError):
                self._overflow()
                return
            if not line:
                break
            self._feed(line)
        self._ended()

    async def _read_stderr(self) -> None:
        stream = self.process.stderr
        while True:
            try:
                line = await stream.readline()
            except (asyncio.LimitOverrunError, ValueError):
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug(f"worker-{self.worker_id} stderr: {text}")

    async def terminate(self) -> None:
        """Kill the worker's process group and reap it."""
        if self.state is WorkerState.TERMINATED:
            return
        if self.process is not None:
            if self.process.returncode is None:
                try:
                    os.killpg(self.process.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
            await self.process.wait()
        for task in self._readers:
            task.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._readers = []
        self.state = WorkerState.TERMINATED
        logger.info(f"Worker-{self.worker_id} terminated")


class ContainerWorker(Worker):
    """Worker running in a locked-down Docker container."""

    backend = "docker"

    def __init__(
        self,
        client: Any,
        permissions: Optional[Permissions] = None,
        image: str = "python:3.12-slim",
        memory_limit_mb: int = 512,
        cpu_quota: int = 100000,
        pids_limit: int = 16,
        environment: Optional[Dict[str, str]] = None,
        max_message_bytes: int = 8 * 1024 * 1024
    ):
        super().__init__(permissions, "python", max_message_bytes)
        self.client = client
        self.image = image
        self.memory_limit_mb = memory_limit_mb
        self.cpu_quota = cpu_quota
        self.pids_limit = pids_limit
        self.environment = {"LANG": "C.UTF-8", **(environment or {})}
        self.container: Optional[Any] = None
        self._follower: Optional[threading.Thread] = None

    def container_config(self, script_url: str) -> Dict[str, Any]:
        # The container always has a network so it can fetch the script;
        # the in-interpreter guard enforces the network permission.
        return {
            "image": self.image,
            "command": self.command(script_url),
            "name": f"eval-{self.worker_id}",
            "detach": True,
            "mem_limit": f"{self.memory_limit_mb}m",
            "memswap_limit": f"{self.memory_limit_mb}m",
            "cpu_quota": self.cpu_quota,
            "cpu_period": 100000,
            "pids_limit": self.pids_limit,
            "read_only": True,
            "security_opt": ["no-new-privileges:true"],
            "cap_drop": ["ALL"],
            "environment": self.environment,
            "extra_hosts": {"host.docker.internal": "host-gateway"},
            "working_dir": "/",
            "user": "65534:65534",
        }

    async def start(self, script_url: str) -> None:
        try:
            self.container = await asyncio.to_thread(
                self.client.containers.run, **self.container_config(script_url)
            )
        except docker.errors.DockerException as e:
            self.state = WorkerState.TERMINATED
            raise SandboxLaunchError(f"Failed to start worker container: {e}") from e

        logger.info(f"Worker-{self.worker_id} started (container={str(self.container.id)[:12]})")
        loop = asyncio.get_running_loop()
        self._follower = threading.Thread(
            target=self._follow_logs,
            args=(loop, self.container),
            name=f"eval-{self.worker_id}-logs",
            daemon=True,
        )
        self._follower.start()

    def _follow_logs(self, loop: asyncio.AbstractEventLoop, container: Any) -> None:
        """Stream container output into the event loop, one line at a time."""
        buffer = b""
        try:
            for chunk in container.logs(stream=True, follow=True, stdout=True, stderr=False):
                buffer += chunk
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    self._call_soon(loop, self._feed, line)
                if len(buffer) > self.max_message_bytes:
                    self._call_soon(loop, self._overflow)
                    return
        except docker.errors.DockerException as e:
            logger.debug(f"worker-{self.worker_id}: log stream closed: {e}")
        if buffer:
            self._call_soon(loop, self._feed, buffer)
        self._call_soon(loop, self._ended)

    @staticmethod
    def _call_soon(loop: asyncio.AbstractEventLoop, callback: Callable, *args) -> None:
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            pass  # Loop already closed

    async def terminate(self) -> None:
        """Force-remove the container."""
        if self.state is WorkerState.TERMINATED:
            return
        if self.container is not None:
            try:
                await asyncio.to_thread(self.container.remove, force=True)
            except docker.errors.NotFound:
                pass
            except docker.errors.APIError as e:
                logger.warning(f"Error removing worker-{self.worker_id}: {e}")
            finally:
                self.container = None
        self.state = WorkerState.TERMINATED
        logger.info(f"Worker-{self.worker_id} terminated")


class SandboxOrchestrator:
    """
    Runs staged scripts in fresh workers, one worker per call.

    Every worker is terminated before ``run`` returns or raises, including
    on timeout and on cancellation of the calling task.
    """

    def __init__(
        self,
        worker_factory: Callable[[], Worker],
        timeout: float = 10.0,
        docker_client: Optional[Any] = None
    ):
        self.worker_factory = worker_factory
        self.timeout = timeout
        self.docker_client = docker_client
        self._active: Set[Worker] = set()
        self.metrics = {
            "workers_launched": 0,
            "workers_terminated": 0,
            "resolved": 0,
            "timed_out": 0,
            "launch_failures": 0,
            "protocol_errors": 0,
        }

    @classmethod
    def from_settings(cls, settings, docker_client: Optional[Any] = None) -> 'SandboxOrchestrator':
        """Build an orchestrator for the configured backend."""
        permissions = Permissions.from_names(settings.permissions)
        cpu_seconds = int(settings.eval_timeout) + 1

        if settings.backend == "docker":
            if docker_client is None:
                try:
                    docker_client = docker.from_env()
                    logger.info("Docker client initialized successfully")
                except docker.errors.DockerException as e:
                    logger.error(f"Failed to initialize Docker client: {e}")
                    raise

            def factory() -> Worker:
                return ContainerWorker(
                    docker_client,
                    permissions=permissions,
                    image=settings.image,
                    memory_limit_mb=settings.memory_limit_mb,
                    cpu_quota=settings.cpu_quota,
                    pids_limit=settings.pids_limit,
                    environment=settings.worker_env,
                    max_message_bytes=settings.max_message_bytes,
                )
        else:
            if settings.is_production:
                logger.warning("Process sandbox backend does not confine hostile code; "
                               "use SANDBOX_BACKEND=docker in production")

            def factory() -> Worker:
                return ProcessWorker(
                    permissions=permissions,
                    python=settings.python_executable,
                    memory_limit_mb=settings.memory_limit_mb,
                    cpu_seconds=cpu_seconds,
                    environment=settings.worker_env,
                    max_message_bytes=settings.max_message_bytes,
                )

        return cls(factory, timeout=settings.eval_timeout, docker_client=docker_client)

    @property
    def active_workers(self) -> int:
        return len(self._active)

    def get_metrics(self) -> Dict[str, int]:
        return {**self.metrics, "active_workers": self.active_workers}

    async def run(self, script_url: str) -> Outcome:
        """
        Execute one staged script.

        Args:
            script_url: URL the worker fetches the wrapper from

        Returns:
            The worker's Outcome; malformed messages become failure Outcomes

        Raises:
            SandboxLaunchError: If the worker could not be started
            SandboxTimeoutError: If no message arrived within the timeout
        """
        worker = self.worker_factory()
        self._active.add(worker)
        try:
            try:
                await worker.start(script_url)
            except SandboxLaunchError:
                self.metrics["launch_failures"] += 1
                logger.error(f"Worker-{worker.worker_id} failed to launch")
                raise
            self.metrics["workers_launched"] += 1

            try:
                message = await worker.receive(self.timeout)
            except SandboxTimeoutError:
                self.metrics["timed_out"] += 1
                logger.warning(f"Worker-{worker.worker_id} timed out after {self.timeout}s")
                raise
        finally:
            await asyncio.shield(self._terminate(worker))

        outcome = Outcome.from_message(message)
        if outcome.ok:
            self.metrics["resolved"] += 1
            logger.info(f"Worker-{worker.worker_id} resolved in {outcome.duration:.1f}ms")
        elif not (isinstance(message, dict) and message.get("type") == "response"):
            self.metrics["protocol_errors"] += 1
            logger.warning(f"Worker-{worker.worker_id} sent no valid result: {message!r}")
        else:
            self.metrics["resolved"] += 1
            logger.warning(f"Worker-{worker.worker_id} reported an error: {outcome.error}")
        return outcome

    async def _terminate(self, worker: Worker) -> None:
        try:
            await worker.terminate()
        finally:
            self._active.discard(worker)
            self.metrics["workers_terminated"] += 1

    def close(self) -> None:
        """Release the Docker client, if any."""
        if self.docker_client is not None:
            try:
                self.docker_client.close()
            except Exception as e:
                logger.warning(f"Error closing Docker client: {e}")
            self.docker_client = None
