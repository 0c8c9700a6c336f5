"""
Graceful shutdown handshake between the host and the worker

    host                                 main thread
    ----                                 -----------
                                         wait_for_signal()  (blocks)
    on_unloading()
      set "unloading"          ------>   wakes up
      wait "completed" (blocks)          close consumer (waits for it)
                                         sleep grace period
      returns                  <------   set "completed"

The host is only released once cleanup has finished and the grace
period has elapsed.
"""
import signal
import threading
import time
from enum import Enum
from typing import Callable, Optional


class ShutdownState(str, Enum):
    WAITING_FOR_SIGNAL = "waiting_for_signal"
    SHUTTING_DOWN = "shutting_down"
    EXITED = "exited"


class ShutdownCoordinator:
    """Blocks the main thread until the host asks the process to unload"""

    def __init__(self, grace_period: float = 5.0, sleep: Callable[[float], None] = time.sleep):
        self.grace_period = grace_period
        self.state = ShutdownState.WAITING_FOR_SIGNAL
        self._sleep = sleep
        self._unloading = threading.Event()
        self._completed = threading.Event()
        self._host_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._previous_handlers = {}

    def install_signal_handlers(self, signals=(signal.SIGINT, signal.SIGTERM)):
        """Treat SIGINT/SIGTERM as the host's unload notification. Main thread only."""
        for sig in signals:
            self._previous_handlers[sig] = signal.signal(sig, self._on_signal)

    def restore_signal_handlers(self):
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers = {}

    def _on_signal(self, signum, frame):
        # The handler runs on the main thread, which is the one doing the
        # cleanup, so the blocking side of the handshake gets its own thread.
        # A second signal goes to the previous handler (force quit).
        self.restore_signal_handlers()
        with self._lock:
            if self._host_thread is not None:
                return
            self._host_thread = threading.Thread(
                target=self.on_unloading, name="host-unloading"
            )
        print(f"[SHUTDOWN] Received {signal.Signals(signum).name}", flush=True)
        self._host_thread.start()

    def on_unloading(self, timeout: Optional[float] = None) -> bool:
        """
        Host callback. Releases the main thread, then waits until it
        confirms cleanup finished. Returns False if `timeout` elapsed first.
        """
        print("[SHUTDOWN] Unloading fired", flush=True)
        self._unloading.set()
        print("[SHUTDOWN] Waiting for completion", flush=True)
        return self._completed.wait(timeout)

    def wait_for_signal(self, timeout: Optional[float] = None) -> bool:
        print("[SHUTDOWN] Waiting for signals", flush=True)
        return self._unloading.wait(timeout)

    def shutdown(self, close: Callable[[], None]):
        """Close the consumer, wait the grace period, then release the host"""
        self.state = ShutdownState.SHUTTING_DOWN
        print("[SHUTDOWN] Received signal, gracefully shutting down", flush=True)

        try:
            close()
            print("[SHUTDOWN] Consumer closed", flush=True)
        except Exception as e:
            print(f"[SHUTDOWN] Error while closing consumer: {e!r}", flush=True)

        self._sleep(self.grace_period)

        self.state = ShutdownState.EXITED
        self._completed.set()
        print("[SHUTDOWN] Shutdown complete", flush=True)

    def release(self):
        """Let the host go without cleanup, e.g. when startup failed"""
        self.state = ShutdownState.EXITED
        self._completed.set()

    def run(self, close: Callable[[], None]):
        self.wait_for_signal()
        self.shutdown(close)
