"""一次问答往返（exchange）的协调器。

run_exchange 的流程：

1. 追加用户消息并立即 commit（之后无论成功失败，用户消息都不会丢）。
2. 流式模式下追加一条占位 Agent 消息，作为增量文本的写入目标。
3. 后台线程调用 Transport，把事件放进队列；调用方线程是唯一的消费者，
   把事件交给 StreamAggregator，并把快照同步到占位消息上。
   非流式响应会被转换成 delta + complete 两个事件，四种调用形态共用一条路径。
4. 到达终态（成功 / 失败 / 取消）后写入最终文本与 continuity id，并 commit 一次。

同一 Agent 同时只允许一个 exchange：新的 exchange 会取消旧的，并等待旧的收尾后再开始。
"""

from dataclasses import dataclass, field
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Optional, Sequence
from uuid import uuid4

from agent_chat.attachments.file_attachment import select_attachment
from agent_chat.config.settings import settings
from agent_chat.domain.cancellation import CancelReason, CancelToken
from agent_chat.domain.conversation import ConversationStore
from agent_chat.domain.exceptions import BusinessError
from agent_chat.domain.models import (
    Conversation,
    ConversationTurn,
    ExchangeOutcome,
    ExchangeRequest,
    FileRef,
    StreamEvent,
    utcnow,
)
from agent_chat.infrastructure.logging.logger import logger
from agent_chat.providers.base import AgentTransport
from agent_chat.session.aggregator import AggregateResult, StreamAggregator


INITIALIZING_PLACEHOLDER = "Initializing..."
FAILURE_NOTICE = "Failed to get response from agent. Please try again."
TIMEOUT_NOTICE = "Request timed out. Please try again."
NO_RESPONSE_NOTICE = "No response received. Please try again."

# 消费者轮询队列的间隔，决定取消和超时的响应速度
_POLL_INTERVAL = 0.05

TurnListener = Callable[[str, ConversationTurn], None]


@dataclass
class _InFlight:
    token: CancelToken = field(default_factory=CancelToken)
    done: threading.Event = field(default_factory=threading.Event)
    owner: int = field(default_factory=threading.get_ident)
    exchange_id: str = field(default_factory=lambda: f"ex-{uuid4().hex[:12]}")
    worker: Optional[threading.Thread] = None


@dataclass
class _PumpFailure:
    error: BaseException


_END = object()


class ExchangeCoordinator:
    def __init__(
        self,
        transport: AgentTransport,
        store: ConversationStore,
        *,
        cfg=settings,
        on_turn_updated: Optional[TurnListener] = None,
    ):
        self._transport = transport
        self._store = store
        self._settings = cfg
        self._on_turn_updated = on_turn_updated
        # 会话修改与 commit 共用一把锁，commit 拿到的永远是完整快照
        self._lock = threading.RLock()
        self._registry_lock = threading.Lock()
        self._in_flight: Dict[str, _InFlight] = {}

    def run_exchange(
        self,
        agent_id: str,
        user_text: str,
        attachments: Optional[Sequence[FileRef]],
        conversation: Conversation,
        *,
        streaming: Optional[bool] = None,
    ) -> ExchangeOutcome:
        """执行一次问答往返，所有异常都转换为写入会话的失败提示。

        Args:
            agent_id: 目标 Agent。
            user_text: 用户输入。
            attachments: 可选附件，只有第一个会发送。
            conversation: 当前激活的会话（由 SessionManager 持有）。
            streaming: 是否使用流式接口，None 时取配置默认值。

        Returns:
            ExchangeOutcome，status 为 completed / failed / canceled。
        """

        use_streaming = self._settings.streaming_enabled if streaming is None else streaming
        handle = self._begin(agent_id)
        log_ctx: Dict[str, Any] = {
            "exchange_id": handle.exchange_id,
            "agent_id": agent_id,
            "mode": "streaming" if use_streaming else "sync",
        }
        try:
            return self._run(agent_id, user_text, attachments, conversation, use_streaming, handle, log_ctx)
        finally:
            self._finish(agent_id, handle)

    def cancel(self, agent_id: str, reason: CancelReason = "user", wait: bool = True) -> bool:
        """取消某个 Agent 的进行中 exchange；wait 为真时等待其完成终态 commit。"""

        with self._registry_lock:
            handle = self._in_flight.get(agent_id)
        if handle is None:
            return False
        handle.token.cancel(reason)
        if wait:
            self._await_ack(handle)
        return True

    def cancel_all(self, reason: CancelReason = "shutdown", wait: bool = True) -> int:
        with self._registry_lock:
            handles = list(self._in_flight.values())
        for handle in handles:
            handle.token.cancel(reason)
        if wait:
            for handle in handles:
                self._await_ack(handle)
        return len(handles)

    def is_in_flight(self, agent_id: str) -> bool:
        with self._registry_lock:
            return agent_id in self._in_flight

    def commit(self, conversation: Conversation) -> Optional[str]:
        """整条会话 upsert 到存储。

        失败时返回错误信息而不是抛出，内存中的会话保持不变，下次 commit 会重试。
        """

        with self._lock:
            conversation.last_activity = utcnow()
            try:
                self._store.save_conversation(conversation)
            except BusinessError as e:
                logger.error(
                    "Commit failed",
                    extra={"extra": {"agent_id": conversation.agent_id, "code": e.code, "error": e.message}},
                )
                return e.message
            conversation.dirty = False
            return None

    # ---- 主流程 ----

    def _run(
        self,
        agent_id: str,
        user_text: str,
        attachments: Optional[Sequence[FileRef]],
        conversation: Conversation,
        use_streaming: bool,
        handle: _InFlight,
        log_ctx: Dict[str, Any],
    ) -> ExchangeOutcome:
        start_time = time.time()
        attachment = select_attachment(attachments)

        user_turn = ConversationTurn(
            text=user_text,
            is_from_user=True,
            attachments=[attachment] if attachment is not None else None,
        )
        placeholder: Optional[ConversationTurn] = None
        with self._lock:
            conversation.append_turn(user_turn)
            self.commit(conversation)
            if use_streaming:
                placeholder = conversation.append_turn(
                    ConversationTurn(text=INITIALIZING_PLACEHOLDER, is_from_user=False)
                )
            request = ExchangeRequest(
                agent_id=agent_id,
                text=user_text,
                mode="streaming" if use_streaming else "sync",
                attachment=attachment,
                thread_id=conversation.thread_id,
            )
        self._notify(agent_id, user_turn)
        if placeholder is not None:
            self._notify(agent_id, placeholder)
        self._log(
            logging.INFO,
            "Exchange started",
            log_ctx,
            has_attachment=attachment is not None,
            thread_id=request.thread_id,
        )

        def mirror(snapshot: str) -> None:
            if placeholder is None:
                return
            with self._lock:
                updated = conversation.update_turn_text(placeholder, snapshot)
            if updated:
                self._notify(agent_id, placeholder)

        aggregator = StreamAggregator(observer=mirror)
        result, failure = self._drive(request, aggregator, handle, log_ctx)

        outcome, agent_turn = self._settle(conversation, placeholder, result, failure, handle.token, log_ctx)
        if agent_turn is not None:
            self._notify(agent_id, agent_turn)
        self._log(
            logging.INFO,
            "Exchange finished",
            log_ctx,
            status=outcome.status,
            committed=outcome.committed,
            thread_id=conversation.thread_id,
            response_id=conversation.last_response_id,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return outcome

    def _drive(
        self,
        request: ExchangeRequest,
        aggregator: StreamAggregator,
        handle: _InFlight,
        log_ctx: Dict[str, Any],
    ) -> tuple[AggregateResult, Optional[BaseException]]:
        token = handle.token
        events: "queue.Queue[object]" = queue.Queue()
        worker = threading.Thread(
            target=self._pump,
            args=(request, events, token),
            name=f"exchange-{request.agent_id}",
            daemon=True,
        )
        handle.worker = worker
        worker.start()

        deadline = time.monotonic() + self._settings.exchange_timeout_seconds
        failure: Optional[BaseException] = None
        while True:
            if token.cancelled:
                aggregator.mark_cancelled()
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                token.cancel("timeout")
                aggregator.mark_cancelled()
                self._log(logging.WARNING, "Exchange timed out", log_ctx)
                break
            try:
                item = events.get(timeout=min(remaining, _POLL_INTERVAL))
            except queue.Empty:
                continue
            if item is _END:
                break
            if isinstance(item, _PumpFailure):
                failure = item.error
                break
            if isinstance(item, StreamEvent):
                self._log_event(item, log_ctx)
                aggregator.apply(item)
        aggregator.flush()
        return aggregator.result(), failure

    def _pump(self, request: ExchangeRequest, events: "queue.Queue[object]", token: CancelToken) -> None:
        """后台线程：调用 Transport，把事件按到达顺序放入队列。"""

        try:
            if request.streaming:
                stream = self._transport.send_message_stream(
                    request.agent_id,
                    request.text,
                    request.attachment,
                    request.thread_id,
                    token,
                )
                try:
                    for event in stream:
                        if token.cancelled:
                            break
                        events.put(event)
                finally:
                    close = getattr(stream, "close", None)
                    if close is not None:
                        close()
            else:
                response = self._transport.send_message(
                    request.agent_id,
                    request.text,
                    request.attachment,
                    request.thread_id,
                )
                if token.cancelled:
                    return
                # 没有响应体与空文本一样按 "no response" 处理
                if response is not None and response.text:
                    events.put(StreamEvent.delta(response.text))
                events.put(StreamEvent.complete(response.thread_id if response is not None else None))
        except Exception as e:  # noqa: BLE001 - 需要把异常转交给消费者线程
            events.put(_PumpFailure(e))
        finally:
            events.put(_END)

    def _settle(
        self,
        conversation: Conversation,
        placeholder: Optional[ConversationTurn],
        result: AggregateResult,
        failure: Optional[BaseException],
        token: CancelToken,
        log_ctx: Dict[str, Any],
    ) -> tuple[ExchangeOutcome, Optional[ConversationTurn]]:
        """根据终态写入最终文本并 commit 一次，返回结果与最终的 Agent 消息。"""

        with self._lock:
            if token.cancelled and token.reason != "timeout":
                # 被取消：丢弃占位消息，之前已 commit 的消息保持原样
                if placeholder is not None:
                    conversation.remove_turn(placeholder)
                self._log(logging.INFO, "Exchange cancelled", log_ctx, reason=token.reason)
                outcome = ExchangeOutcome(status="canceled", error=f"cancelled: {token.reason}")
            elif token.cancelled:
                outcome = ExchangeOutcome(status="failed", text=TIMEOUT_NOTICE, error="timeout")
            elif failure is not None:
                error = failure.message if isinstance(failure, BusinessError) else str(failure)
                self._log(logging.ERROR, "Exchange failed", log_ctx, error=error)
                outcome = ExchangeOutcome(status="failed", text=FAILURE_NOTICE, error=error)
            elif result.failed:
                self._log(logging.ERROR, "Stream reported error", log_ctx, error=result.error)
                outcome = ExchangeOutcome(status="failed", text=result.text, error=result.error)
            elif result.empty:
                self._log(logging.WARNING, "No content received", log_ctx)
                outcome = ExchangeOutcome(status="failed", text=NO_RESPONSE_NOTICE, error="empty response")
            else:
                conversation.set_continuity(result.thread_id, result.response_id)
                outcome = ExchangeOutcome(
                    status="completed",
                    text=result.text,
                    thread_id=result.thread_id,
                    response_id=result.response_id,
                )

            agent_turn = None
            if outcome.status != "canceled":
                agent_turn = self._place_agent_text(conversation, placeholder, outcome.text)
            outcome.store_error = self.commit(conversation)
            outcome.committed = outcome.store_error is None
            return outcome, agent_turn

    @staticmethod
    def _place_agent_text(
        conversation: Conversation,
        placeholder: Optional[ConversationTurn],
        text: str,
    ) -> Optional[ConversationTurn]:
        if placeholder is None:
            return conversation.append_turn(ConversationTurn(text=text, is_from_user=False))
        if not conversation.update_turn_text(placeholder, text):
            logger.warning(
                "Placeholder turn no longer in conversation",
                extra={"extra": {"agent_id": conversation.agent_id}},
            )
            return None
        return placeholder

    # ---- 进行中 exchange 的登记 ----

    def _begin(self, agent_id: str) -> _InFlight:
        handle = _InFlight()
        with self._registry_lock:
            previous = self._in_flight.get(agent_id)
            self._in_flight[agent_id] = handle
        if previous is not None:
            previous.token.cancel("superseded")
            self._log(
                logging.INFO,
                "Superseding in-flight exchange",
                {"agent_id": agent_id},
                previous=previous.exchange_id,
                exchange_id=handle.exchange_id,
            )
            self._await_ack(previous)
        return handle

    def _finish(self, agent_id: str, handle: _InFlight) -> None:
        with self._registry_lock:
            if self._in_flight.get(agent_id) is handle:
                del self._in_flight[agent_id]
        worker = handle.worker
        if worker is not None and worker is not threading.current_thread():
            # 被取消时 Transport 已关闭连接，worker 应很快退出
            worker.join(self._settings.cancel_ack_timeout)
            if worker.is_alive():
                logger.warning(
                    "Exchange worker still running after exchange finished",
                    extra={"extra": {"exchange_id": handle.exchange_id, "agent_id": agent_id}},
                )
        handle.done.set()

    def _await_ack(self, handle: _InFlight) -> None:
        if handle.owner == threading.get_ident():
            return
        if not handle.done.wait(self._settings.cancel_ack_timeout):
            logger.warning(
                "Cancelled exchange did not acknowledge in time",
                extra={"extra": {"exchange_id": handle.exchange_id}},
            )

    # ---- 辅助方法 ----

    def _notify(self, agent_id: str, turn: ConversationTurn) -> None:
        if self._on_turn_updated is None:
            return
        try:
            self._on_turn_updated(agent_id, turn)
        except Exception as e:
            logger.error("Turn listener failed", extra={"extra": {"agent_id": agent_id, "error": str(e)}})

    def _log_event(self, event: StreamEvent, log_ctx: Dict[str, Any]) -> None:
        if event.kind == "delta":
            return
        if event.kind == "created":
            self._log(logging.INFO, "Stream created", log_ctx, response_id=event.response_id)
        elif event.kind == "complete":
            self._log(logging.INFO, "Stream complete", log_ctx, thread_id=event.thread_id)
        elif event.kind == "error":
            self._log(logging.ERROR, "Stream error event", log_ctx, error=event.message)
        else:
            self._log(logging.INFO, "Stream event", log_ctx, kind=event.raw_kind or event.kind)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
