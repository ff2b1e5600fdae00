from __future__ import annotations

import threading
from typing import Callable, Optional

from .logs import json_log

Listener = Callable[[bool], None]


class NetworkMonitor:
    """
    Tracks online/offline state and notifies listeners only when it flips.

    State can be pushed in with `set_online()` (OS connectivity callbacks) or
    pulled by polling `probe` (typically the gateway's health check) on a
    background thread.
    """

    def __init__(self, probe: Optional[Callable[[], bool]] = None, interval_s: float = 15.0, initial: bool = False):
        self._probe = probe
        self._interval_s = max(0.5, float(interval_s or 15.0))
        self._online = bool(initial)
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _remove():
            self.remove_listener(listener)

        return _remove

    def remove_listener(self, listener: Listener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def set_online(self, online: bool) -> bool:
        """Record the latest signal. Returns True when the state changed."""
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            listeners = list(self._listeners)
        json_log("info", "network.changed", online=online)
        for fn in listeners:
            try:
                fn(online)
            except Exception as ex:
                json_log("error", "network.listener_failed", error=str(ex))
        return True

    def check_now(self) -> bool:
        if self._probe is None:
            return self.is_online
        try:
            ok = bool(self._probe())
        except Exception as ex:
            json_log("debug", "network.probe_failed", error=str(ex))
            ok = False
        self.set_online(ok)
        return ok

    def start(self):
        if self._probe is None or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="network-monitor", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        t = self._thread
        self._thread = None
        if t is not None and t is not threading.current_thread():
            t.join(timeout=self._interval_s + 1)
        with self._lock:
            self._listeners = []

    def _run(self):
        while not self._stop.wait(self._interval_s):
            self.check_now()
