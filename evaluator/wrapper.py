"""
Wrapper generation for submitted code.

The wrapper is a self-contained Python program that runs inside a sandbox
worker. The worker injects two callables into its globals: ``post_message``,
which delivers the single outcome message, and ``close``, which ends the
worker. The wrapper then:

- swaps ``builtins.print`` for a recording version while the submission runs,
  so output from modules it imports is captured too, hands it a recording
  ``console`` and attaches a recording handler to the root logger;
- compiles and runs the submission as its own ``__main__`` module, with
  top-level ``await`` allowed;
- turns exceptions raised by the submission into ``error`` log entries;
- times the run and posts exactly one outcome before closing.

The submission text is embedded as a string literal and is never parsed here.
"""

DEFAULT_MAX_ENTRIES = 1000

WRAPPER_TEMPLATE = r'''
import asyncio
import ast
import builtins
import inspect
import logging
import math
import sys
import time
import types

SOURCE = __SOURCE__
MAX_ENTRIES = __MAX_ENTRIES__
MAX_DEPTH = 8
MAX_INT_BITS = 14000

_print = builtins.print


def _jsonable(value, depth=0):
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value if value.bit_length() < MAX_INT_BITS else "<int too large to display>"
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if depth < MAX_DEPTH:
        if isinstance(value, (list, tuple)):
            return [_jsonable(item, depth + 1) for item in value]
        if isinstance(value, dict):
            return {str(key): _jsonable(item, depth + 1) for key, item in value.items()}
    try:
        return repr(value)
    except Exception:
        return object.__repr__(value)


def _describe(exc):
    try:
        return "%s: %s" % (type(exc).__name__, exc)
    except Exception:
        return type(exc).__name__


class LogBuffer:
    """Ordered record of intercepted calls."""

    def __init__(self, limit):
        self.entries = []
        self.limit = limit
        self.truncated = False

    def record(self, level, args):
        if len(self.entries) >= self.limit:
            if not self.truncated:
                self.truncated = True
                self.entries.append({
                    "level": "warn",
                    "args": ["Log limit of %d entries reached; further output dropped" % self.limit],
                })
            return
        self.entries.append({"level": level, "args": [_jsonable(arg) for arg in args]})


class Console:
    """
    Console handed to the submission. Calls are recorded, then printed.

    Methods without their own definition, such as table or trace, are recorded
    under their own name.
    """

    def __init__(self, buffer):
        self._buffer = buffer

    def _emit(self, level, args, stream):
        self._buffer.record(level, args)
        _print(*args, file=stream)

    def log(self, *args):
        self._emit("log", args, sys.stdout)

    def info(self, *args):
        self._emit("info", args, sys.stdout)

    def debug(self, *args):
        self._emit("debug", args, sys.stdout)

    def warn(self, *args):
        self._emit("warn", args, sys.stderr)

    def warning(self, *args):
        self._emit("warning", args, sys.stderr)

    def error(self, *args):
        self._emit("error", args, sys.stderr)

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)

        def method(*args):
            self._emit(name, args, sys.stdout)
        return method


class BufferHandler(logging.Handler):
    """Root logging handler that records every emitted record."""

    def __init__(self, buffer):
        super().__init__()
        self.log_buffer = buffer
        self.setFormatter(logging.Formatter("%(levelname)s:%(name)s:%(message)s"))

    def emit(self, record):
        try:
            message = record.getMessage()
        except Exception:
            message = str(record.msg)
        self.log_buffer.record(record.levelname.lower(), [message])
        try:
            sys.stderr.write(self.format(record) + "\n")
        except Exception:
            self.handleError(record)


def _recording_print(buffer):
    def sandbox_print(*args, sep=" ", end="\n", file=None, flush=False):
        if file is None or file is sys.stdout:
            buffer.record("log", args)
        elif file is sys.stderr:
            buffer.record("error", args)
        _print(*args, sep=sep, end=end, file=file, flush=flush)
    return sandbox_print


def load(buffer):
    module = types.ModuleType("__main__")
    module.__dict__["console"] = Console(buffer)
    sys.modules["__main__"] = module
    builtins.print = _recording_print(buffer)
    try:
        code = compile(
            SOURCE,
            "<submission>",
            "exec",
            flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
            dont_inherit=True,
        )
        result = eval(code, module.__dict__)
        if inspect.iscoroutine(result):
            asyncio.run(result)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            buffer.record("error", ["SystemExit: %s" % (exc.code,)])
    except BaseException as exc:
        buffer.record("error", [_describe(exc)])
    finally:
        builtins.print = _print


def execute():
    start = None
    try:
        buffer = LogBuffer(MAX_ENTRIES)
        # Caller lookup walks stack frames, which the sandbox does not allow.
        logging._srcfile = None
        logging.getLogger().addHandler(BufferHandler(buffer))
        start = time.perf_counter()
        load(buffer)
        duration = (time.perf_counter() - start) * 1000.0
        return {"ok": True, "logs": buffer.entries, "duration": duration}
    except BaseException as exc:
        duration = (time.perf_counter() - start) * 1000.0 if start is not None else 0.0
        return {"ok": False, "error": _describe(exc), "duration": duration}


try:
    try:
        post_message({"type": "response", "data": execute()})
    except Exception as exc:
        post_message({"type": "error", "data": "Could not deliver result: " + _describe(exc)})
finally:
    close()
'''


def generate_script(code: str, max_entries: int = DEFAULT_MAX_ENTRIES) -> str:
    """
    Build the wrapper program for one submission.

    Args:
        code: Submitted source text, treated as opaque
        max_entries: Maximum number of log entries the wrapper keeps

    Returns:
        Wrapper source text ready to be staged
    """
    return (
        WRAPPER_TEMPLATE
        .replace("__MAX_ENTRIES__", str(int(max_entries)))
        .replace("__SOURCE__", repr(code))
    )
