"""跨线程取消令牌。"""

import threading
from typing import Callable, List, Literal, Optional

from agent_chat.infrastructure.logging.logger import logger


CancelReason = Literal["superseded", "timeout", "shutdown", "user"]


class CancelToken:
    """可在任意线程上调用 cancel() 的一次性取消令牌。

    第一次 cancel 的 reason 生效，之后的调用被忽略。
    on_cancel 注册的回调在 cancel 的调用线程上执行，
    Transport 用它关闭阻塞中的连接。
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[CancelReason] = None
        self._lock = threading.Lock()
        self._hooks: List[Callable[[], None]] = []

    def cancel(self, reason: CancelReason = "user") -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            hooks, self._hooks = self._hooks, []
        for hook in hooks:
            self._run_hook(hook)
        return True

    def on_cancel(self, hook: Callable[[], None]) -> None:
        """注册取消回调；已经取消时立即执行。"""

        with self._lock:
            if not self._event.is_set():
                self._hooks.append(hook)
                return
        self._run_hook(hook)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    @staticmethod
    def _run_hook(hook: Callable[[], None]) -> None:
        try:
            hook()
        except Exception as e:
            logger.warning("Cancel hook failed", extra={"extra": {"error": str(e)}})
