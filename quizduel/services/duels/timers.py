import heapq
import itertools
import logging
import time

log = logging.getLogger(__name__)


class TimerHandle:
    """Handle for scheduled work. Cancelling more than once is safe."""

    __slots__ = ('name', 'cancelled')

    def __init__(self, name=''):
        self.name = name
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


def cancel_timer(handle):
    if handle is not None:
        handle.cancel()
    return None


class SocketIOScheduler:
    """Timers backed by Socket.IO background tasks.

    Every callback runs inside the Flask app context. A cancelled handle is
    checked after each sleep so a fired timer never acts on a dead session.
    """

    def __init__(self, socketio, app):
        self.socketio = socketio
        self.app = app

    def now_ms(self):
        return int(time.time() * 1000)

    def call_later(self, delay, fn, *args, name=''):
        handle = TimerHandle(name)
        self.socketio.start_background_task(self._run_later, handle, delay, fn, args)
        return handle

    def call_every(self, interval, fn, *args, name=''):
        handle = TimerHandle(name)
        self.socketio.start_background_task(self._run_every, handle, interval, fn, args)
        return handle

    def _run_later(self, handle, delay, fn, args):
        self.socketio.sleep(delay)
        if handle.cancelled:
            return
        self._invoke(handle, fn, args)

    def _run_every(self, handle, interval, fn, args):
        next_due = time.time() + interval
        while not handle.cancelled:
            self.socketio.sleep(max(0.0, next_due - time.time()))
            if handle.cancelled:
                return
            self._invoke(handle, fn, args)
            next_due += interval

    def _invoke(self, handle, fn, args):
        with self.app.app_context():
            try:
                fn(*args)
            except Exception:
                log.exception(f"[timer-error] timer={handle.name or fn.__name__}")


class ManualScheduler:
    """Deterministic virtual clock used when TESTING is set.

    Nothing fires until ``advance`` moves the clock past a due time; due
    callbacks then run in time order, each seeing ``now_ms`` equal to its
    own due time.
    """

    def __init__(self, start_ms=1_000_000):
        self._now_ms = start_ms
        self._queue = []
        self._seq = itertools.count()

    def now_ms(self):
        return self._now_ms

    def call_later(self, delay, fn, *args, name=''):
        handle = TimerHandle(name)
        self._push(self._now_ms + _to_ms(delay), handle, fn, args, None)
        return handle

    def call_every(self, interval, fn, *args, name=''):
        handle = TimerHandle(name)
        self._push(self._now_ms + _to_ms(interval), handle, fn, args, _to_ms(interval))
        return handle

    def pending(self):
        return sum(1 for entry in self._queue if not entry[2].cancelled)

    def advance(self, seconds):
        target = self._now_ms + _to_ms(seconds)
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, fn, args, interval = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now_ms = due
            if interval is not None:
                self._push(due + interval, handle, fn, args, interval)
            fn(*args)
        self._now_ms = target

    def run_pending(self):
        self.advance(0)

    def _push(self, due, handle, fn, args, interval):
        heapq.heappush(self._queue, (due, next(self._seq), handle, fn, args, interval))


def _to_ms(seconds):
    return int(round(seconds * 1000))
