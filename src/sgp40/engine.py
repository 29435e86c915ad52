from __future__ import annotations

import enum
import logging
import queue
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Union

from .config import EngineSettings
from .errors import EngineCrashed, EngineError, EngineTerminated, EngineTimeout
from .models import AlgorithmSnapshot, TuningParams
from .protocol import (
    Reply,
    encode_get_states,
    encode_process,
    encode_set_states,
    encode_tuning_params,
    parse_reply,
    parse_states,
    parse_voc_index,
)

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_NAME = "voc_index"


class EngineState(str, enum.Enum):
    STARTING = "starting"
    READY = "ready"
    TERMINATED = "terminated"


@dataclass
class _ExitStatus:
    returncode: int


@dataclass
class EngineRequest:
    command: str
    response: "queue.Queue[Union[Reply, EngineError]]"


_STOP = object()


class _OutputPump(threading.Thread):
    """Forward the merged stdout/stderr of the program as bounded lines."""

    def __init__(
        self,
        process: subprocess.Popen,
        lines: "queue.Queue[Union[str, _ExitStatus]]",
        mailbox: "queue.Queue[object]",
        line_max: int,
    ) -> None:
        super().__init__(daemon=True, name=f"voc-index-output-{process.pid}")
        self._process = process
        self._lines = lines
        self._mailbox = mailbox
        self._line_max = max(line_max, 16)

    def run(self) -> None:
        stream = self._process.stdout
        while True:
            # Longer lines arrive as several fragments of at most line_max bytes.
            raw = stream.readline(self._line_max)
            if not raw:
                break
            self._lines.put(raw.decode("ascii", errors="replace"))
        status = _ExitStatus(self._process.wait())
        self._lines.put(status)
        self._mailbox.put(status)


class VocIndexEngine(threading.Thread):
    """
    Owns one long-running instance of the VOC algorithm program and talks to
    it over a line protocol on stdin/stdout.

    Calls from any thread are queued in a mailbox and handled one at a time by
    the engine thread, so only one request is ever outstanding. A reply that
    does not arrive within `settings.timeout_sec`, or an exit of the program,
    terminates the engine for good: the program's learning state is unknown
    from then on and a fresh engine has to be started.
    """

    def __init__(self, settings: Optional[EngineSettings] = None, *, name: str = DEFAULT_ENGINE_NAME):
        super().__init__(daemon=True, name=f"voc-index-{name}")
        self.settings = settings or EngineSettings()
        self.engine_name = name
        self.state = EngineState.STARTING
        self.termination_reason: Optional[str] = None
        self._state_lock = threading.Lock()
        self._mailbox: "queue.Queue[object]" = queue.Queue()
        self._lines: "queue.Queue[Union[str, _ExitStatus]]" = queue.Queue()
        self._process: Optional[subprocess.Popen] = None
        self._pump: Optional[_OutputPump] = None
        self._stopping = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.poll() if self._process is not None else None

    def start(self) -> None:
        command = self.settings.command()
        try:
            self._process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            with self._state_lock:
                self.state = EngineState.TERMINATED
                self.termination_reason = f"failed to start {command[0]}: {exc}"
            raise EngineTerminated(self.termination_reason) from exc
        self._pump = _OutputPump(self._process, self._lines, self._mailbox, self.settings.line_max)
        self._pump.start()
        with self._state_lock:
            self.state = EngineState.READY
        super().start()
        logger.info("Started VOC index engine %s (pid=%d)", self.engine_name, self._process.pid)

    def stop(self, timeout: float = 2.0) -> None:
        """
        Terminate the program and wait for the engine thread to exit.

        The program is signalled right away, so requests still queued behind
        the stop are answered with EngineTerminated instead of being served.
        """
        self._stopping = True
        process = self._process
        if process is not None and process.poll() is None:
            process.terminate()
        self._mailbox.put(_STOP)
        if self.is_alive():
            self.join(timeout=timeout)

    # Public operations -------------------------------------------------

    def process(self, sraw: int) -> int:
        """Feed one raw sample (0..0xFFFF) to the algorithm, return the VOC index."""
        return parse_voc_index(self.call(encode_process(sraw)).unwrap())

    def get_states(self) -> AlgorithmSnapshot:
        return parse_states(self.call(encode_get_states()).unwrap())

    def set_states(self, snapshot: AlgorithmSnapshot) -> Optional[str]:
        """
        Restore previously saved learning state. Only worth doing after a short
        interruption, and after `set_tuning_params` when tuning is used.
        """
        return self.call(encode_set_states(snapshot)).unwrap()

    def set_tuning_params(self, params: TuningParams) -> Optional[str]:
        return self.call(encode_tuning_params(params)).unwrap()

    def call(self, command: str) -> Reply:
        response: "queue.Queue[Union[Reply, EngineError]]" = queue.Queue(maxsize=1)
        with self._state_lock:
            if self.state is not EngineState.READY:
                raise EngineTerminated(
                    f"VOC index engine is {self.state.value}: {self.termination_reason or 'not started'}"
                )
            self._mailbox.put(EngineRequest(command=command, response=response))
        try:
            result = response.get(timeout=self.settings.call_timeout_sec)
        except queue.Empty as exc:
            raise EngineTimeout(f"No reply to '{command.strip()}' from the engine thread") from exc
        if isinstance(result, EngineError):
            raise result
        return result

    # Engine thread -----------------------------------------------------

    def run(self) -> None:
        reason = "stopped"
        try:
            reason = self._serve()
        finally:
            self._shutdown(reason)

    def _serve(self) -> str:
        while True:
            item = self._mailbox.get()
            if item is _STOP:
                return "stopped"
            if isinstance(item, _ExitStatus):
                if self._stopping:
                    return "stopped"
                logger.error("VOC index OS process died with status: %s", item.returncode)
                return f"OS process died with status: {item.returncode}"
            if not isinstance(item, EngineRequest):
                continue
            if self._stopping:
                item.response.put(EngineTerminated("VOC index engine is stopping"))
                continue
            try:
                reply = self._exchange(item.command)
            except EngineTerminated as exc:
                logger.error("VOC index engine failed: %s", exc)
                item.response.put(exc)
                return str(exc)
            item.response.put(reply)

    def _exchange(self, command: str) -> Reply:
        if self._process is None or self._process.stdin is None:
            raise EngineTerminated("VOC index OS process is not running")
        try:
            self._process.stdin.write(command.encode("ascii"))
            self._process.stdin.flush()
        except OSError as exc:
            raise EngineCrashed(f"Cannot write to VOC index OS process: {exc}", self._process.poll()) from exc
        deadline = time.monotonic() + self.settings.timeout_sec
        while True:
            try:
                item = self._lines.get(timeout=max(deadline - time.monotonic(), 0.0))
            except queue.Empty as exc:
                raise EngineTimeout(
                    f"Timeout waiting for VOC index OS process to reply to '{command.strip()}'"
                ) from exc
            if isinstance(item, _ExitStatus):
                raise EngineCrashed(
                    f"VOC index OS process died with status: {item.returncode}", item.returncode
                )
            reply = parse_reply(item)
            if reply is None:
                logger.debug("[%s] %s", self.engine_name, item.rstrip())
                continue
            return reply

    def _shutdown(self, reason: str) -> None:
        with self._state_lock:
            self.state = EngineState.TERMINATED
            self.termination_reason = reason
        self._terminate_process()
        while True:
            try:
                item = self._mailbox.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, EngineRequest):
                item.response.put(EngineTerminated(f"VOC index engine terminated: {reason}"))
        _unregister(self)
        logger.info("VOC index engine %s terminated (%s)", self.engine_name, reason)

    def _terminate_process(self) -> None:
        process = self._process
        if process is None:
            return
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        if process.stdin is not None:
            try:
                process.stdin.close()
            except OSError:
                pass


_registry: Dict[str, VocIndexEngine] = {}
_registry_lock = threading.Lock()


def _unregister(engine: VocIndexEngine) -> None:
    with _registry_lock:
        if _registry.get(engine.engine_name) is engine:
            del _registry[engine.engine_name]


def get_engine(name: str = DEFAULT_ENGINE_NAME) -> Optional[VocIndexEngine]:
    with _registry_lock:
        return _registry.get(name)


def start_engine(settings: Optional[EngineSettings] = None, *, name: str = DEFAULT_ENGINE_NAME) -> VocIndexEngine:
    """
    Start the engine registered under `name`.

    The algorithm has no reset command, so an engine that is still running
    under the same name is terminated first and a new program is spawned with
    fresh learning state.
    """
    with _registry_lock:
        existing = _registry.pop(name, None)
    if existing is not None and existing.state is not EngineState.TERMINATED:
        logger.info("VOC index engine %s already running (pid=%s), restarting it", name, existing.pid)
        existing.stop()
    engine = VocIndexEngine(settings, name=name)
    engine.start()
    with _registry_lock:
        _registry[name] = engine
    return engine
