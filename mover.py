"""Runs iphymv over a cohort and reports one completion record per path.

Paths are split into batches and up to ``max_procs`` iphymv processes run at
once, the same contract as ``xargs --max-args N --max-procs P``.  Worker
threads only read process output and put events on a single queue; the
generator returned by :meth:`IPhymvExecutor.run` drains that queue in the
caller's thread, writes every raw line to the log and decides the outcome of
each path.
"""
import logging
import posixpath
import queue
import shlex
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum

from constants import *

LOG = logging.getLogger("phymv.mover")

_EV_OUT = "out"
_EV_ERR = "err"
_EV_EXIT = "exit"
_EV_DONE = "done"


class Outcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class CompletionRecord:
    path: str
    outcome: Outcome
    reason: str | None = None

    @property
    def ok(self):
        return self.outcome is Outcome.SUCCESS


@dataclass(frozen=True)
class MoveRequest:
    dest_resc: str
    src_resc: str
    min_threads: int
    max_procs: int
    batch_size: int
    paths: tuple


def batched(paths, size):
    if size < 1:
        raise ValueError("batch size must be positive")
    return [list(paths[i:i + size]) for i in range(0, len(paths), size)]


class MoveExecutor:
    """Interface the cohort scheduler depends on."""

    def run(self, request: MoveRequest, log):
        raise NotImplementedError


# characters iphymv puts around an object path in its output
_PATH_DELIMS = frozenset(" \t\r\n,;:'\"()[]")


def names_path(line, path):
    """True when ``path`` occurs in ``line`` as a whole path, not as a prefix of a longer one."""
    start = line.find(path)
    while start != -1:
        end = start + len(path)
        if (start == 0 or line[start - 1] in _PATH_DELIMS) and (end == len(line) or line[end] in _PATH_DELIMS):
            return True
        start = line.find(path, start + 1)
    return False


class _Batch:
    def __init__(self, batch_id, paths):
        self.batch_id = batch_id
        self.paths = paths
        self.unreported = list(paths)
        self._pending = set(paths)
        self.by_name = {}
        for p in paths:
            self.by_name.setdefault(posixpath.basename(p), []).append(p)

    def match(self, line):
        """Return the unreported path a line of iphymv output refers to.

        Lines about a path that was already reported, such as the later
        lines of a multi-line error, return None.
        """
        hits = [p for p in self.paths if names_path(line, p)]
        if hits:
            path = max(hits, key=len)
            return path if path in self._pending else None
        tokens = line.split()
        if not tokens:
            return None
        for p in self.by_name.get(tokens[0], []):
            if p in self._pending:
                return p
        return None

    def report(self, path, outcome, reason=None):
        self._pending.discard(path)
        self.unreported.remove(path)
        return CompletionRecord(path, outcome, reason)


class IPhymvExecutor(MoveExecutor):
    def __init__(self, iphymv=IPHYMV, thread_hint=False):
        self.iphymv = iphymv
        self.thread_hint = thread_hint
        self._procs = {}
        self._procs_lock = threading.Lock()
        self._stop = threading.Event()

    def command(self, request: MoveRequest, paths):
        cmd = [self.iphymv, *IPHYMV_FLAGS, "-R", request.dest_resc, "-S", request.src_resc]
        if self.thread_hint:
            cmd += ["-N", str(request.min_threads)]
        return cmd + list(paths)

    def run(self, request: MoveRequest, log):
        batches = [_Batch(idx, paths) for idx, paths in enumerate(batched(request.paths, request.batch_size))]
        if not batches:
            return
        self._stop.clear()
        pending = queue.Queue()
        for batch in batches:
            pending.put(batch)
        events = queue.Queue()

        n_workers = min(max(request.max_procs, 1), len(batches))
        for idx in range(n_workers):
            t = threading.Thread(target=self._worker_loop, name=f"iphymv-{idx}", args=(request, pending, events), daemon=True)
            t.start()

        by_id = {batch.batch_id: batch for batch in batches}
        done = 0
        try:
            while done < n_workers:
                kind, batch_id, payload = events.get()
                if kind == _EV_DONE:
                    done += 1
                    continue
                batch = by_id[batch_id]
                if kind == _EV_EXIT:
                    yield from self._finish_batch(batch, payload, log)
                    continue
                log.write(payload if payload.endswith("\n") else payload + "\n")
                log.flush()
                path = batch.match(payload)
                if path is None:
                    continue
                if kind == _EV_ERR:
                    yield batch.report(path, Outcome.FAILURE, payload.strip())
                else:
                    yield batch.report(path, Outcome.SUCCESS)
        finally:
            if done < n_workers:
                self.terminate()

    def _finish_batch(self, batch, status, log):
        returncode, error = status
        if error is not None:
            log.write(error + "\n")
            log.flush()
            reason = error
        elif returncode != 0:
            reason = f"iphymv exited with status {returncode}"
        else:
            reason = None
        for path in list(batch.unreported):
            if reason is None:
                yield batch.report(path, Outcome.SUCCESS)
            else:
                yield batch.report(path, Outcome.FAILURE, reason)

    def _worker_loop(self, request, pending, events):
        try:
            while not self._stop.is_set():
                try:
                    batch = pending.get_nowait()
                except queue.Empty:
                    return
                events.put((_EV_EXIT, batch.batch_id, self._run_batch(request, batch, events)))
        finally:
            events.put((_EV_DONE, None, None))

    def _run_batch(self, request, batch, events):
        cmd = self.command(request, batch.paths)
        LOG.debug("cmd: %s", " ".join(shlex.quote(str(x)) for x in cmd))
        try:
            proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, errors="replace")
        except OSError as exc:
            LOG.error("could not start %s: %s", self.iphymv, exc)
            return None, f"could not start {self.iphymv}: {exc}"
        with self._procs_lock:
            self._procs[batch.batch_id] = proc
        err_reader = threading.Thread(target=self._pump, args=(proc.stderr, _EV_ERR, batch.batch_id, events), daemon=True)
        err_reader.start()
        try:
            self._pump(proc.stdout, _EV_OUT, batch.batch_id, events)
            err_reader.join()
            returncode = proc.wait()
        finally:
            with self._procs_lock:
                self._procs.pop(batch.batch_id, None)
        if returncode != 0:
            LOG.debug("iphymv batch %d exited with status %d", batch.batch_id, returncode)
        return returncode, None

    @staticmethod
    def _pump(stream, kind, batch_id, events):
        with stream:
            for line in stream:
                events.put((kind, batch_id, line))

    def terminate(self):
        self._stop.set()
        with self._procs_lock:
            procs = list(self._procs.values())
        for proc in procs:
            if proc.poll() is None:
                LOG.warning("terminating iphymv process %d", proc.pid)
                proc.terminate()
