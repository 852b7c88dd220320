"""流式响应聚合器。

把一次问答往返中 Transport 产出的 StreamEvent 序列合并成一条消息：

- delta 按到达顺序追加到缓冲区，并把缓冲区快照推给 observer。
- created / complete 记录 response_id / thread_id。
- error 把最终文本替换为 "Error: <message>"，并标记失败。
- 首个 delta 之前的 connected / created 只更新占位文本；首个 delta 之后
  （单向 latch）它们不再改动可见文本，防止乱序的生命周期事件覆盖内容。

缓冲区由一把锁保护，apply() 可以在任意线程上调用。
"""

from dataclasses import dataclass
import threading
import time
from typing import Callable, Iterable, Optional

from agent_chat.domain.cancellation import CancelToken
from agent_chat.domain.models import StreamEvent
from agent_chat.infrastructure.logging.logger import logger


ERROR_PREFIX = "Error: "
CONNECTED_PLACEHOLDER = "Connected, waiting for response..."
PROCESSING_PLACEHOLDER = "Processing your request..."

Observer = Callable[[str], None]


@dataclass
class AggregateResult:
    """一次流式往返的聚合结果。

    - text: 最终文本；失败时为错误文本。
    - received_content: 是否收到过 delta。
    - empty: 正常结束但没有任何内容，调用方应替换为 "no response" 提示。
    - cancelled: 事件源因取消而提前结束。
    """

    text: str
    thread_id: Optional[str]
    response_id: Optional[str]
    failed: bool
    error: Optional[str]
    received_content: bool
    completed: bool
    cancelled: bool = False
    delta_count: int = 0

    @property
    def empty(self) -> bool:
        return not self.failed and not self.text


class StreamAggregator:
    def __init__(self, observer: Optional[Observer] = None, log_every: int = 10):
        self._observer = observer
        self._log_every = log_every
        self._lock = threading.Lock()
        self._buffer = ""
        self._visible = ""
        self._thread_id: Optional[str] = None
        self._response_id: Optional[str] = None
        self._first_delta = False
        self._completed = False
        self._failed = False
        self._error: Optional[str] = None
        self._cancelled = False
        self._delta_count = 0

    @property
    def has_received_first_delta(self) -> bool:
        with self._lock:
            return self._first_delta

    def apply(self, event: StreamEvent) -> None:
        snapshot: Optional[str] = None
        with self._lock:
            if event.kind == "delta":
                if event.text:
                    self._buffer += event.text
                self._first_delta = True
                self._delta_count += 1
                if not self._failed:
                    self._visible = self._buffer
                    snapshot = self._visible
                if self._delta_count % self._log_every == 0:
                    logger.info(
                        "Stream progress",
                        extra={"extra": {"deltas": self._delta_count, "chars": len(self._buffer)}},
                    )
            elif event.kind == "created":
                if event.response_id:
                    self._response_id = event.response_id
                if not self._first_delta and not self._failed:
                    self._visible = PROCESSING_PLACEHOLDER
                    snapshot = self._visible
            elif event.kind == "connected":
                if not self._first_delta and not self._failed:
                    self._visible = CONNECTED_PLACEHOLDER
                    snapshot = self._visible
            elif event.kind == "complete":
                if event.thread_id:
                    self._thread_id = event.thread_id
                self._completed = True
            elif event.kind == "error":
                self._error = event.message or "Unknown stream error"
                self._failed = True
                self._completed = True
                self._visible = f"{ERROR_PREFIX}{self._error}"
                snapshot = self._visible
            else:
                logger.debug("Ignored stream event", extra={"extra": {"kind": event.raw_kind or event.kind}})
        if snapshot is not None:
            self._emit(snapshot)

    def consume(self, events: Iterable[StreamEvent], cancel_token: Optional[CancelToken] = None) -> "AggregateResult":
        """消费整个事件源并返回结果。

        事件源抛出的异常会被转换为失败结果，不会向外传播。
        """

        start = time.time()
        try:
            for event in events:
                if cancel_token is not None and cancel_token.cancelled:
                    self.mark_cancelled()
                    break
                self.apply(event)
        except Exception as e:
            logger.error("Stream source failed", extra={"extra": {"error": str(e)}})
            self.apply(StreamEvent.error(str(e)))
        self.flush()
        result = self.result()
        logger.info(
            "Stream consumed",
            extra={"extra": {
                "deltas": result.delta_count,
                "failed": result.failed,
                "cancelled": result.cancelled,
                "elapsed_seconds": round(time.time() - start, 2),
            }},
        )
        return result

    def mark_cancelled(self) -> None:
        with self._lock:
            self._cancelled = True

    def flush(self) -> None:
        """重新推送一次完整文本，保证最后一次 emission 反映完整缓冲区。"""

        with self._lock:
            if self._failed:
                snapshot = self._visible
            elif self._first_delta:
                snapshot = self._buffer
            else:
                return
        self._emit(snapshot)

    def result(self) -> AggregateResult:
        with self._lock:
            return AggregateResult(
                text=self._visible if self._failed else self._buffer,
                thread_id=self._thread_id,
                response_id=self._response_id,
                failed=self._failed,
                error=self._error,
                received_content=self._first_delta,
                completed=self._completed,
                cancelled=self._cancelled,
                delta_count=self._delta_count,
            )

    def _emit(self, snapshot: str) -> None:
        if self._observer is None:
            return
        try:
            self._observer(snapshot)
        except Exception as e:
            logger.error("Stream observer failed", extra={"extra": {"error": str(e)}})
