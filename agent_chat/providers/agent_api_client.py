"""Agent API 的 httpx 客户端。

端点（相对 agent_api_base_url）：
- GET  /v1/agents                       -> ["agent-id", ...]
- GET  /v1/agents/types                 -> ["Default", ...]
- GET  /v1/agents/{id}                  -> {"id", "name"}
- POST /v1/agents                       <- {"name", "agentType"}
- POST /v1/agents/{id}/messages         <- {"text", "threadId", "fileBase64Data"}
                                        -> {"agentId", "threadId", "text"}
- POST /v1/agents/{id}/messages/stream  <- 同上，返回 text/event-stream

流式响应是标准 SSE：每帧由若干 "event:" / "data:" 行组成，以空行结束，
data 为 JSON。事件类型优先取 "event:" 行，其次取 data 里的 "type"/"eventType"。
"""

import json
from typing import Any, Dict, Iterable, Iterator, List, Optional

import httpx

from agent_chat.config.settings import settings
from agent_chat.domain.cancellation import CancelToken
from agent_chat.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from agent_chat.domain.models import AgentInfo, FileRef, MessageResponse, StreamEvent
from agent_chat.infrastructure.logging.logger import logger


_COMPLETE_KINDS = {"complete", "completed", "done"}
_ERROR_KINDS = {"error", "stream_error"}


class AgentApiClient:
    """AgentTransport 的 HTTP 实现。"""

    name = "agent-api"

    def __init__(self, cfg=settings):
        self._settings = cfg

    # ---- Agent 管理 ----

    def list_agents(self) -> List[str]:
        data = self._request("GET", "/v1/agents")
        return [str(a) for a in data or []]

    def list_agent_types(self) -> List[str]:
        data = self._request("GET", "/v1/agents/types")
        return [str(t) for t in data or []]

    def get_agent(self, agent_id: str) -> AgentInfo:
        data = self._request("GET", f"/v1/agents/{agent_id}") or {}
        return AgentInfo(id=data.get("id") or agent_id, name=data.get("name") or agent_id)

    def create_agent(self, name: str, agent_type: str = "Default") -> AgentInfo:
        data = self._request("POST", "/v1/agents", payload={"name": name, "agentType": agent_type}) or {}
        return AgentInfo(id=data.get("id") or "", name=data.get("name") or name)

    # ---- 非流式 ----

    def send_message(
        self,
        agent_id: str,
        text: str,
        attachment: Optional[FileRef] = None,
        thread_id: Optional[str] = None,
    ) -> MessageResponse:
        payload = self._build_message_payload(text, attachment, thread_id)
        data = self._request("POST", f"/v1/agents/{agent_id}/messages", payload=payload) or {}
        return MessageResponse(
            agent_id=data.get("agentId") or agent_id,
            thread_id=data.get("threadId") or None,
            text=data.get("text"),
        )

    # ---- 流式 ----

    def send_message_stream(
        self,
        agent_id: str,
        text: str,
        attachment: Optional[FileRef] = None,
        thread_id: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> Iterator[StreamEvent]:
        base = self._base_url()
        payload = self._build_message_payload(text, attachment, thread_id)
        timeout = httpx.Timeout(self._settings.http_timeout, read=self._settings.exchange_timeout_seconds)
        try:
            with httpx.Client(timeout=timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{base}/v1/agents/{agent_id}/messages/stream",
                    json=payload,
                    headers=self._headers(accept="text/event-stream"),
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message="Agent API rate limit")
                    if resp.status_code >= 400:
                        resp.read()
                        raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
                    if cancel_token is not None:
                        # 取消时关闭响应，让阻塞在读取上的 iter_lines 立即返回
                        cancel_token.on_cancel(resp.close)
                    try:
                        for event in self._iter_sse(resp.iter_lines()):
                            if cancel_token is not None and cancel_token.cancelled:
                                break
                            yield event
                    except (httpx.TransportError, httpx.StreamError):
                        if cancel_token is None or not cancel_token.cancelled:
                            raise
                    if cancel_token is not None and cancel_token.cancelled:
                        logger.info(
                            "Stream cancelled by caller",
                            extra={"extra": {"agent_id": agent_id, "reason": cancel_token.reason}},
                        )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    def _base_url(self) -> str:
        base = (getattr(self._settings, "agent_api_base_url", None) or "").rstrip("/")
        if not base:
            raise ValidationError(code="MISSING_BASE_URL", message="AGENT_API_BASE_URL not set")
        return base

    def _headers(self, accept: str = "application/json") -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": accept}
        api_key = getattr(self._settings, "agent_api_key", None)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        base = self._base_url()
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.request(method, f"{base}{path}", json=payload, headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Agent API rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        if not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _build_message_payload(text: str, attachment: Optional[FileRef], thread_id: Optional[str]) -> dict:
        payload: Dict[str, Any] = {"text": text}
        if thread_id:
            payload["threadId"] = thread_id
        if attachment is not None:
            # data URI 原样转发
            payload["fileBase64Data"] = attachment.encoded_payload
        return payload

    def _iter_sse(self, lines: Iterable[str]) -> Iterator[StreamEvent]:
        event_name: Optional[str] = None
        data_lines: List[str] = []
        for line in lines:
            if not line:
                if data_lines or event_name:
                    event = self._parse_frame(event_name, "\n".join(data_lines))
                    if event is not None:
                        yield event
                event_name, data_lines = None, []
                continue
            if line.startswith(":"):
                continue
            if line.startswith("event:"):
                # 没有空行分隔时，新的 event 行也意味着上一帧结束
                if data_lines:
                    event = self._parse_frame(event_name, "\n".join(data_lines))
                    if event is not None:
                        yield event
                    data_lines = []
                event_name = line[6:].strip()
            elif line.startswith("data:"):
                value = line[5:]
                data_lines.append(value[1:] if value.startswith(" ") else value)
        if data_lines or event_name:
            event = self._parse_frame(event_name, "\n".join(data_lines))
            if event is not None:
                yield event

    @staticmethod
    def _parse_frame(event_name: Optional[str], data_str: str) -> Optional[StreamEvent]:
        if data_str == "[DONE]":
            return None
        data: Dict[str, Any] = {}
        if data_str:
            try:
                parsed = json.loads(data_str)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                data = parsed
            elif event_name == "delta":
                # 有的服务端直接把增量文本放在 data 行里
                data = {"text": parsed if isinstance(parsed, str) else data_str}
            elif (event_name or "").lower() in _ERROR_KINDS:
                data = {"message": parsed if isinstance(parsed, str) else data_str}
        kind = (event_name or data.get("type") or data.get("eventType") or "").lower()
        if not kind:
            return None
        if kind == "connected":
            return StreamEvent.connected()
        if kind == "created":
            return StreamEvent.created(data.get("responseId") or data.get("response_id"))
        if kind == "delta":
            return StreamEvent.delta(data.get("text") or data.get("delta") or "")
        if kind == "reasoning":
            return StreamEvent.reasoning()
        if kind in _COMPLETE_KINDS:
            return StreamEvent.complete(data.get("threadId") or data.get("thread_id"))
        if kind in _ERROR_KINDS:
            return StreamEvent.error(str(data.get("error") or data.get("message") or "Unknown stream error"))
        return StreamEvent.other(kind)
