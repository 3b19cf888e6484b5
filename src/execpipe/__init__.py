"""
Shell-like subprocess pipelines with in-process stages.

Usage:
    from execpipe import cmd, Pipeline, read_first_line, read_lines, non_empty

    # Run a command, echo its output, abort the program if it fails
    cmd(repo, "git fetch origin").run()

    # Pipe commands together (upstream is joined while downstream runs)
    (cmd(repo, "git diff") | cmd(scratch, "git apply")).run()

    # Finish with a function to get a value back
    branch = (cmd(repo, "git rev-parse --abbrev-ref HEAD") | read_first_line).run()
    files = (cmd(repo, "git ls-files") | read_lines).run()

    # Format arguments are rendered into the command line
    if (cmd(repo, "git log origin/{}..HEAD", branch) | non_empty).run():
        print("unpushed commits")

    # Leading KEY=VALUE words are environment overrides
    cmd(repo, "GIT_PAGER=cat git log -n 1").run()

    # Raise instead of aborting
    try:
        cmd(repo, "false").run(abort=False)
    except NonZeroExit as e:
        print(e.returncode)
"""

from __future__ import annotations

import io
import logging
import os
import re
import shlex
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Mapping, NoReturn, Optional

__version__ = "0.1.0"

__all__ = [
    "Command",
    "Function",
    "Pipeline",
    "cmd",
    "run",
    "pipe",
    "CommandSpec",
    "ProcessHandle",
    "smart_split",
    "resolve_command",
    "parse_command",
    "spawn",
    "as_source",
    "read_first_line",
    "read_lines",
    "non_empty",
    "Console",
    "console",
    "Settings",
    "DEFAULT_SETTINGS",
    "parse_var",
    "abort",
    "fatal",
    "PipelineError",
    "ConfigError",
    "ParseError",
    "SpawnError",
    "FeedError",
    "OutputDecodeError",
    "NonZeroExit",
    "EmptyOutput",
    "TimeoutExpired",
    "__version__",
]

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for every fatal pipeline condition."""


class ConfigError(PipelineError):
    """Raised when a configuration variable cannot be parsed."""
    def __init__(self, name: str, value: str, reason: Any):
        self.name = name
        self.value = value
        super().__init__(f"failed to parse env var {name!r} ({value!r}): {reason}")


class ParseError(PipelineError):
    """Raised when a command line has no program word."""
    def __init__(self, tokens: list):
        self.tokens = list(tokens)
        super().__init__(f"cannot find program part of command: {self.tokens!r}")


class SpawnError(PipelineError):
    """Raised when the OS refuses to start a child process."""
    def __init__(self, command: str, workdir: Any, error: OSError):
        self.command = command
        self.workdir = workdir
        self.error = error
        super().__init__(
            f"failed to spawn {command}\n"
            f"in {os.fspath(workdir)!r}: {error}"
        )


class FeedError(PipelineError):
    """Raised when reading the stdin source of a child failed."""
    def __init__(self, command: str, error: BaseException):
        self.command = command
        self.error = error
        super().__init__(
            f"error reading from stdin content:\n{error}\n"
            f"to subprocess:\n{command}"
        )


class OutputDecodeError(PipelineError):
    """Raised when a sink receives output that is not valid UTF-8."""
    def __init__(self, error: UnicodeDecodeError):
        self.error = error
        super().__init__(f"subprocess output is not valid UTF-8: {error}")


class NonZeroExit(PipelineError):
    """Raised when a child exits with a non-success status."""
    def __init__(self, command: str, returncode: int):
        self.command = command
        self.returncode = returncode
        if returncode < 0:
            code = f"unknown (signal {-returncode})"
        else:
            code = str(returncode)
        super().__init__(f"exit code {code}\nfrom: {command}")

    @property
    def signal(self) -> Optional[int]:
        """Number of the signal that killed the child, if any."""
        return -self.returncode if self.returncode < 0 else None


class EmptyOutput(PipelineError):
    """Raised when a line was required but the child printed nothing."""
    def __init__(self):
        super().__init__("subprocess did not print anything")


class TimeoutExpired(PipelineError):
    """Raised when a pipeline runs longer than its timeout."""
    def __init__(self, commands: list, timeout: float):
        self.commands = commands
        self.timeout = timeout
        super().__init__(f"Pipeline timed out after {timeout}s: {commands}")


class Console:
    """
    Terminal writer shared by the pipeline thread and every relay thread.

    Each call writes whole lines while holding the lock, so output of
    concurrently running children never interleaves inside a line.
    """

    def __init__(self, stream: Optional[IO[str]] = None):
        self._stream = stream
        self._lock = threading.Lock()

    @property
    def stream(self) -> IO[str]:
        # Resolved per write so a replaced sys.stdout is honoured.
        return self._stream if self._stream is not None else sys.stdout

    def println(self, line: str = "") -> None:
        with self._lock:
            out = self.stream
            out.write(line + "\n")
            out.flush()

    def printblock(self, tag: str, text: str) -> None:
        """
        Print a block of text as one unit.

        The first line is prefixed by `tag`; the following lines are
        indented by the width of the tag so the block reads as one message.
        """
        lines = text.splitlines() or [""]
        pad = " " * len(tag)
        with self._lock:
            out = self.stream
            for i, line in enumerate(lines):
                out.write((tag if i == 0 else pad) + line + "\n")
            out.flush()


console = Console()


def parse_var(
    name: str,
    convert: Callable[[str], Any] = str,
    environ: Optional[Mapping[str, str]] = None,
    default: Any = None,
) -> Any:
    """
    Read and convert an environment variable.

    Returns `default` if the variable is unset. Raises ConfigError if
    `convert` rejects the value.
    """
    environ = os.environ if environ is None else environ
    if name not in environ:
        return default
    value = environ[name]
    try:
        return convert(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(name, value, e) from e


def _positive(convert: Callable[[str], Any]) -> Callable[[str], Any]:
    def parse(value: str) -> Any:
        parsed = convert(value)
        if parsed <= 0:
            raise ValueError("must be positive")
        return parsed
    return parse


@dataclass(frozen=True)
class Settings:
    """Knobs shared by every stage of a pipeline run."""
    stderr_prefix: str = "| "
    diagnostic_tag: str = "[DIAGNOSTIC] "
    abort_tag: str = "[ABORT] "
    chunk_size: int = 8192
    relay_join_timeout: float = 1.0  # Seconds to wait for relays after a child exits
    console: Console = field(default=console, compare=False, repr=False)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from EXECPIPE_* environment variables.

        Recognized: EXECPIPE_STDERR_PREFIX, EXECPIPE_CHUNK_SIZE,
        EXECPIPE_RELAY_JOIN_TIMEOUT. Unset variables keep their defaults.
        """
        defaults = cls()
        return cls(
            stderr_prefix=parse_var(
                "EXECPIPE_STDERR_PREFIX", str, environ, defaults.stderr_prefix),
            chunk_size=parse_var(
                "EXECPIPE_CHUNK_SIZE", _positive(int), environ, defaults.chunk_size),
            relay_join_timeout=parse_var(
                "EXECPIPE_RELAY_JOIN_TIMEOUT", _positive(float), environ,
                defaults.relay_join_timeout),
        )


DEFAULT_SETTINGS = Settings()


def abort(message: str, settings: Optional[Settings] = None) -> NoReturn:
    """Print an abort message, then exit the program with status 1."""
    settings = settings or DEFAULT_SETTINGS
    settings.console.printblock(settings.abort_tag, message)
    raise SystemExit(1)


def fatal(error: BaseException, settings: Optional[Settings] = None) -> NoReturn:
    """Abort the program, reporting `error`."""
    abort(str(error), settings)


# Tokenizer and resolver

_ASCII_WHITESPACE = frozenset(" \t\n\r\x0c")
_ENV_ASSIGNMENT = re.compile(r"([^=]+)=([^=]+)")


def smart_split(line: str) -> list[str]:
    """
    Split a command line into words, with awareness of quotes and escaping.

    A backslash makes the next character literal, double quotes group
    words without being kept, and unquoted ASCII whitespace separates
    words. An unterminated quote is closed by the end of the line and a
    trailing lone backslash is dropped.
    """
    parts: list[str] = []
    escaping = False
    quoting = False
    buf: list[str] = []

    for c in line:
        if c == "\\" and not escaping:
            escaping = True
        elif escaping:
            buf.append(c)
            escaping = False
        elif c == '"':
            quoting = not quoting
        elif c in _ASCII_WHITESPACE and not quoting:
            if buf:
                parts.append("".join(buf))
                buf = []
        else:
            buf.append(c)

    if buf:
        parts.append("".join(buf))
    return parts


@dataclass(frozen=True)
class CommandSpec:
    """A resolved command line: environment overrides, program and arguments."""
    env: dict = field(default_factory=dict)
    program: str = ""
    args: list = field(default_factory=list)

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        assignments = [f"{k}={shlex.quote(v)}" for k, v in self.env.items()]
        return " ".join(assignments + [shlex.join(self.argv)])


def resolve_command(tokens: list[str]) -> CommandSpec:
    """
    Classify words into environment assignments, program and arguments.

    Only KEY=VALUE words before the program are assignments; the first
    other word is the program and every word after it is an argument.
    """
    env: dict[str, str] = {}
    program: Optional[str] = None
    args: list[str] = []

    for token in tokens:
        if program is not None:
            args.append(token)
            continue
        match = _ENV_ASSIGNMENT.fullmatch(token)
        if match:
            env[match.group(1)] = match.group(2)
        else:
            program = token

    if program is None:
        raise ParseError(tokens)
    return CommandSpec(env=env, program=program, args=args)


def parse_command(line: str) -> CommandSpec:
    """Tokenize and resolve a command line."""
    return resolve_command(smart_split(line))


# Byte sources

def _is_source(value: Any) -> bool:
    return isinstance(value, (bytes, bytearray, str)) or hasattr(value, "read")


def as_source(value: Any = None) -> IO[bytes]:
    """
    Wrap `value` as a readable byte stream.

    Accepts None (empty input), bytes, str (UTF-8 encoded) or any object
    with a read() method.
    """
    if value is None:
        return io.BytesIO()
    if isinstance(value, str):
        return io.BytesIO(value.encode("utf-8"))
    if isinstance(value, (bytes, bytearray)):
        return io.BytesIO(bytes(value))
    if hasattr(value, "read"):
        return value
    raise TypeError(f"not a byte source: {value!r}")


def _close_quietly(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        close()
    except OSError:
        pass  # Already broken, nothing left to release


# Threads

class _Worker(threading.Thread):
    """
    A daemon thread that remembers the exception of its target.

    join() re-raises that exception in the joining thread once the target
    has finished.
    """

    def __init__(self, name: str, target: Callable[..., Any], *args: Any):
        super().__init__(name=name, daemon=True)
        self._work = target
        self._work_args = args
        self._exception: Optional[BaseException] = None

    def run(self) -> None:
        try:
            self._work(*self._work_args)
        except Exception as e:
            self._exception = e

    def join(self, timeout: Optional[float] = None) -> None:
        super().join(timeout)
        if not self.is_alive() and self._exception is not None:
            raise self._exception


def _start(name: str, target: Callable[..., Any], *args: Any) -> _Worker:
    worker = _Worker(name, target, *args)
    worker.start()
    return worker


# Process spawning and relays

class ProcessHandle:
    """
    Owns one spawned child and the relay threads serving its pipes.

    The handle is joined exactly once: joining waits for the child, lets
    its relays drain and turns a failed exit status into NonZeroExit.
    """

    def __init__(self, proc: subprocess.Popen, spec: CommandSpec, settings: Settings):
        self._proc = proc
        self.spec = spec
        self.command = str(spec)
        self._settings = settings
        self._feeder: Optional[_Worker] = None
        self._relay: Optional[_Worker] = None
        self._feed_error: Optional[BaseException] = None
        self._joined = False
        self._join_lock = threading.Lock()

    @property
    def program(self) -> str:
        return self.spec.program

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        """Exit status, or None while the child is still running."""
        return self._proc.poll()

    def _start_relays(self, source: IO[bytes]) -> None:
        self._relay = _start(
            f"execpipe-stderr[{self.program}]",
            _relay_stderr, self._proc.stderr, self._settings,
        )
        self._feeder = _start(
            f"execpipe-feed[{self.program}]",
            _feed_stdin, self, source, self._proc.stdin,
        )

    def join(self) -> None:
        """Wait for the child to exit and check its status."""
        with self._join_lock:
            if self._joined:
                raise RuntimeError(f"{self.command} has already been joined")
            self._joined = True

        returncode = self._proc.wait()
        for relay in (self._relay, self._feeder):
            if relay is None:
                continue
            try:
                relay.join(timeout=self._settings.relay_join_timeout)
            except Exception as e:
                if self._feed_error is None:
                    self._feed_error = e

        if self._feed_error is not None:
            raise FeedError(self.command, self._feed_error)
        if returncode != 0:
            raise NonZeroExit(self.command, returncode)

    def kill(self) -> None:
        """Send SIGKILL to the child's process group, grandchildren included."""
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
        except OSError:
            pass  # Group already gone

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid}, command={self.command!r})"


def _feed_stdin(handle: ProcessHandle, source: IO[bytes], stdin: IO[bytes]) -> None:
    """Copy `source` into a child's stdin until EOF, then close it."""
    settings = handle._settings
    read = getattr(source, "read1", None) or source.read
    try:
        with stdin:
            while True:
                try:
                    chunk = read(settings.chunk_size)
                    if isinstance(chunk, str):
                        chunk = chunk.encode("utf-8")
                    elif chunk and not isinstance(chunk, (bytes, bytearray, memoryview)):
                        raise TypeError(
                            f"stdin source returned {type(chunk).__name__}, not bytes")
                except Exception as e:
                    handle._feed_error = e
                    return
                if not chunk:
                    return
                stdin.write(chunk)
                stdin.flush()
    except OSError as e:
        # The child stopped reading; its exit status decides the outcome.
        settings.console.printblock(
            settings.diagnostic_tag,
            f"error writing into stdin:\n{e}\nto subprocess:\n{handle.command}",
        )
    finally:
        _close_quietly(source)


def _relay_stderr(stderr: IO[bytes], settings: Settings) -> None:
    """Echo a child's stderr to the console, one prefixed line at a time."""
    try:
        with io.TextIOWrapper(stderr, encoding="utf-8", errors="replace") as text:
            for line in text:
                settings.console.println(settings.stderr_prefix + line.rstrip("\n"))
    except (OSError, ValueError) as e:
        settings.console.println(f"{settings.stderr_prefix}{e!r}")


def spawn(
    workdir: Any,
    spec: CommandSpec,
    source: Any = None,
    settings: Optional[Settings] = None,
) -> tuple[ProcessHandle, IO[bytes]]:
    """
    Start one external program with all three standard streams piped.

    Args:
        workdir: Working directory of the child.
        spec: Resolved command; its env overrides the parent environment.
        source: What to feed into stdin (see as_source). It is owned and
                closed by the feeder thread.
        settings: Relay settings. Defaults to DEFAULT_SETTINGS.

    Returns:
        The process handle and the child's stdout stream.
    """
    settings = settings or DEFAULT_SETTINGS
    source = as_source(source)
    env = {**os.environ, **spec.env}

    logger.debug("executing command in %s: %s", workdir, spec)
    try:
        proc = subprocess.Popen(
            spec.argv,
            cwd=os.fspath(workdir),
            env=env,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,  # Own process group, so kill() reaches grandchildren
        )
    except OSError as e:
        _close_quietly(source)
        raise SpawnError(str(spec), workdir, e) from e

    handle = ProcessHandle(proc, spec, settings)
    handle._start_relays(source)
    return handle, proc.stdout


# Terminal sinks

def _decode(data: Any) -> str:
    if isinstance(data, str):
        return data
    try:
        return bytes(data).decode("utf-8")
    except UnicodeDecodeError as e:
        raise OutputDecodeError(e) from e


def _strip_terminator(line: str) -> str:
    if line.endswith("\n"):
        line = line[:-1]
    if line.endswith("\r"):
        line = line[:-1]
    return line


def read_first_line(stream: IO[bytes]) -> str:
    """Read a line from a process's output. Raises EmptyOutput if there is none."""
    line = stream.readline()
    if not line:
        raise EmptyOutput()
    return _strip_terminator(_decode(line))


def read_lines(stream: IO[bytes]) -> list[str]:
    """Read a sequence of lines from a process's output."""
    text = _decode(stream.read())
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [_strip_terminator(line) for line in lines]


def non_empty(stream: IO[bytes]) -> bool:
    """Read the process's output, return whether it printed any non-whitespace character."""
    return bool(_decode(stream.read()).strip())


# Pipeline stages

class Command:
    """
    A command stage: one external program run in a working directory.

    Examples:
        Command(repo, "git status").run()
        Command(repo, "git log -n 1 {}", rev) | read_first_line
        Command(".", "cat", stdin="hello")
    """

    def __init__(
        self,
        workdir: Any,
        line: str,
        *fmt_args: Any,
        stdin: Any = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        """
        Create a command stage.

        Args:
            workdir: Working directory of the program.
            line: Command line. Leading KEY=VALUE words set environment
                  variables for this command only.
            *fmt_args: If given, rendered into `line` with str.format.
            stdin: Static input (see as_source). Only allowed on the first
                   stage of a pipeline.
            env: Extra environment variables. Assignments written in the
                 command line take precedence.
        """
        self.workdir = workdir
        self.line = line.format(*fmt_args) if fmt_args else line
        self.stdin = stdin
        self.env = dict(env) if env else {}

    def resolve(self) -> CommandSpec:
        """Parse the command line, merging in the extra environment."""
        spec = parse_command(self.line)
        if self.env:
            spec = CommandSpec(
                env={**self.env, **spec.env}, program=spec.program, args=spec.args)
        return spec

    def _copy(self, **changes: Any) -> "Command":
        new = Command.__new__(Command)
        new.__dict__.update(self.__dict__)
        new.__dict__.update(changes)
        return new

    def with_stdin(self, stdin: Any) -> "Command":
        return self._copy(stdin=stdin)

    def with_env(self, **env: str) -> "Command":
        return self._copy(env={**self.env, **env})

    def with_cwd(self, workdir: Any) -> "Command":
        return self._copy(workdir=workdir)

    def __or__(self, other: Any) -> "Pipeline":
        return Pipeline([self]) | other

    def run(self, **kwargs: Any) -> Any:
        """Run this command as a one-stage pipeline. See Pipeline.run."""
        return Pipeline([self]).run(**kwargs)

    def __repr__(self) -> str:
        return f"Command({os.fspath(self.workdir)!r}, {self.line!r})"


class Function:
    """A function stage: an in-process transformation of the current value."""

    def __init__(self, transform: Callable[[Any], Any]):
        if not callable(transform):
            raise TypeError(f"not callable: {transform!r}")
        self.transform = transform

    def __call__(self, value: Any) -> Any:
        return self.transform(value)

    def __or__(self, other: Any) -> "Pipeline":
        return Pipeline([self]) | other

    def __repr__(self) -> str:
        name = getattr(self.transform, "__name__", None) or repr(self.transform)
        return f"Function({name})"


def _as_stage(stage: Any) -> Any:
    if isinstance(stage, (Command, Function)):
        return stage
    if callable(stage):
        return Function(stage)
    raise TypeError(f"not a pipeline stage: {stage!r}")


_EMPTY = object()


class Pipeline:
    """
    An ordered chain of command and function stages.

    Pipelines are immutable; every builder method returns a new one.

    Examples:
        (cmd(repo, "git diff") | cmd(scratch, "git apply")).run()
        Pipeline.command(repo, "git ls-files").then_function(read_lines).run()
        (Pipeline.value(b"data") | cmd(".", "sha256sum") | read_first_line).run()
    """

    def __init__(self, stages: Any = (), initial: Any = _EMPTY, settings: Optional[Settings] = None):
        self.stages = tuple(_as_stage(s) for s in stages)
        self._initial = initial
        self.settings = settings

        for i, stage in enumerate(self.stages):
            if isinstance(stage, Command) and stage.stdin is not None:
                if i > 0 or initial is not _EMPTY:
                    raise ValueError(
                        f"only the first stage of a pipeline may have stdin: {stage!r}")

    @classmethod
    def command(cls, workdir: Any, line: str, *fmt_args: Any, **kwargs: Any) -> "Pipeline":
        return cls([Command(workdir, line, *fmt_args, **kwargs)])

    @classmethod
    def value(cls, value: Any) -> "Pipeline":
        """Start a pipeline from a plain value instead of a command."""
        return cls(initial=value)

    @property
    def has_initial(self) -> bool:
        return self._initial is not _EMPTY

    def _derive(self, stages: Any) -> "Pipeline":
        return Pipeline(stages, initial=self._initial, settings=self.settings)

    def then_command(self, workdir: Any, line: str, *fmt_args: Any, **kwargs: Any) -> "Pipeline":
        return self._derive(self.stages + (Command(workdir, line, *fmt_args, **kwargs),))

    def then_function(self, transform: Callable[[Any], Any]) -> "Pipeline":
        return self._derive(self.stages + (Function(transform),))

    def __or__(self, other: Any) -> "Pipeline":
        """
        Append a stage or another pipeline.

        Usage: cmd(repo, "git log") | cmd(repo, "grep fix") | read_lines
        """
        if isinstance(other, Pipeline):
            if other.has_initial:
                raise ValueError("cannot pipe into a pipeline that starts from a value")
            return self._derive(self.stages + other.stages)
        if isinstance(other, (Command, Function)) or callable(other):
            return self._derive(self.stages + (_as_stage(other),))
        return NotImplemented

    def with_stdin(self, stdin: Any) -> "Pipeline":
        """Return a new pipeline whose first command reads `stdin`."""
        if self.has_initial or not self.stages or not isinstance(self.stages[0], Command):
            raise ValueError("stdin can only be given to a pipeline starting with a command")
        return self._derive((self.stages[0].with_stdin(stdin),) + self.stages[1:])

    def with_env(self, **env: str) -> "Pipeline":
        """Return a new pipeline with additional environment variables for ALL commands."""
        return self._derive(
            s.with_env(**env) if isinstance(s, Command) else s for s in self.stages)

    def with_cwd(self, workdir: Any) -> "Pipeline":
        """Return a new pipeline with a different working directory for ALL commands."""
        return self._derive(
            s.with_cwd(workdir) if isinstance(s, Command) else s for s in self.stages)

    def with_settings(self, settings: Settings) -> "Pipeline":
        return Pipeline(self.stages, initial=self._initial, settings=settings)

    def run(
        self,
        abort: bool = True,
        timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
    ) -> Any:
        """
        Evaluate the pipeline left to right.

        Args:
            abort: If True, any PipelineError prints an abort message and
                   exits the program. If False, the error is raised.
            timeout: Maximum seconds to wait. None means no timeout. When
                     exceeded, every child is killed and TimeoutExpired
                     is raised (or reported).
            settings: Overrides the pipeline's settings for this run.

        Returns:
            The value of the last stage if it is a function, None if it
            is a command (its output was echoed to the console).
        """
        settings = settings or self.settings or DEFAULT_SETTINGS
        try:
            return _Run(self, settings, timeout).execute()
        except PipelineError as e:
            if not abort:
                raise
            fatal(e, settings)

    def __repr__(self) -> str:
        parts = [repr(s) for s in self.stages]
        if self.has_initial:
            parts.insert(0, f"Value({self._initial!r})")
        return f"Pipeline({' | '.join(parts)})"


class _Run:
    """State of one pipeline evaluation."""

    def __init__(self, pipeline: Pipeline, settings: Settings, timeout: Optional[float]):
        self.pipeline = pipeline
        self.settings = settings
        self.timeout = timeout
        self.handles: list[ProcessHandle] = []
        self.background: list[_Worker] = []
        self.expired = threading.Event()
        self.stopped = threading.Event()
        self._lock = threading.Lock()

    def execute(self) -> Any:
        timer = None
        if self.timeout is not None:
            timer = threading.Timer(self.timeout, self._expire)
            timer.daemon = True
            timer.start()
        try:
            return self._evaluate()
        except PipelineError:
            self._stop()
            if self.expired.is_set():
                raise TimeoutExpired(self._commands(), self.timeout) from None
            raise
        finally:
            if timer is not None:
                timer.cancel()

    def _evaluate(self) -> Any:
        pipeline = self.pipeline
        pending: Optional[tuple[ProcessHandle, IO[bytes]]] = None
        value = pipeline._initial if pipeline.has_initial else None

        for i, stage in enumerate(pipeline.stages):
            if isinstance(stage, Command):
                if pending is not None:
                    handle, source = pending
                    # Downstream must be running before upstream is waited on.
                    pending = self._spawn(stage, source)
                    self._join_in_background(handle)
                    continue
                if i == 0 and not pipeline.has_initial:
                    source = stage.stdin
                else:
                    source = value if _is_source(value) else None
                pending = self._spawn(stage, source)
                value = None
            else:
                if pending is not None:
                    value = self._materialize(*pending)
                    pending = None
                value = stage(value)

        if pending is not None:
            self._finish(*pending)
            return None
        return value

    def _spawn(self, stage: Command, source: Any) -> tuple[ProcessHandle, IO[bytes]]:
        try:
            spec = stage.resolve()
        except ParseError:
            _close_quietly(source)
            raise
        handle, stdout = spawn(stage.workdir, spec, source, self.settings)
        with self._lock:
            self.handles.append(handle)
            if self.stopped.is_set():
                handle.kill()
        return handle, stdout

    def _join_in_background(self, handle: ProcessHandle) -> None:
        def join() -> None:
            try:
                handle.join()
            except PipelineError as e:
                logger.error("upstream command failed: %s", e)
                # Unblock the calling thread, which is waiting on downstream stages.
                self._stop()
                raise

        self.background.append(_start(f"execpipe-join[{handle.program}]", join))

    def _collect_background(self) -> None:
        workers, self.background = self.background, []
        for worker in workers:
            worker.join()

    def _join_last(self, handle: ProcessHandle) -> None:
        # Upstream failures win over the downstream one (pipefail order).
        try:
            handle.join()
        finally:
            self._collect_background()

    def _materialize(self, handle: ProcessHandle, stdout: IO[bytes]) -> IO[bytes]:
        with stdout:
            data = stdout.read()
        self._join_last(handle)
        return io.BytesIO(data)

    def _finish(self, handle: ProcessHandle, stdout: IO[bytes]) -> None:
        with io.TextIOWrapper(stdout, encoding="utf-8", errors="replace") as text:
            for line in text:
                self.settings.console.println(line.rstrip("\n"))
        self._join_last(handle)

    def _expire(self) -> None:
        logger.warning("pipeline timed out after %ss, killing children", self.timeout)
        self.expired.set()
        self._stop()

    def _stop(self) -> None:
        with self._lock:
            self.stopped.set()
            handles = list(self.handles)
        for handle in handles:
            handle.kill()

    def _commands(self) -> list[str]:
        return [s.line for s in self.pipeline.stages if isinstance(s, Command)]


# Convenient aliases
cmd = Command


def run(workdir: Any, line: str, *fmt_args: Any, **kwargs: Any) -> Any:
    """
    Convenience function to run one command line directly.

    Usage:
        run(repo, "git init")
        run(repo, "git checkout {}", branch, timeout=60)
    """
    return Command(workdir, line, *fmt_args).run(**kwargs)


def pipe(*stages: Any, **kwargs: Any) -> Any:
    """
    Convenience function to build and run a pipeline from stages.

    Usage:
        lines = pipe(cmd(repo, "git ls-files"), read_lines)
    """
    return Pipeline(stages).run(**kwargs)
