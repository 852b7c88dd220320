"""会话与流式事件的数据模型。

本模块定义了客户端内部共享的标准数据结构：

- FileRef: 随消息发送的附件（data URI 形式）。
- ConversationTurn: 会话中的一条消息（用户或 Agent）。
- Conversation: 某个 Agent 的完整会话，持久化的基本单位。
- ConversationIndex: 所有会话的根索引，整体写入存储。
- StreamEvent: Transport 流式返回中的一个事件。
- ExchangeRequest / ExchangeOutcome: 一次问答往返的描述与结果。

所有模型都提供 to_dict/from_dict，时间统一序列化为带 "Z" 的 UTC ISO 字符串。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional


ExchangeMode = Literal["sync", "streaming"]
ExchangeStatus = Literal["completed", "failed", "canceled"]
StreamEventKind = Literal["connected", "created", "delta", "reasoning", "complete", "error", "other"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(raw: Optional[str]) -> datetime:
    if not raw:
        return utcnow()
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


@dataclass(frozen=True)
class FileRef:
    """一个已编码的附件。

    - encoded_payload: "data:{media_type};base64,{body}" 形式的 data URI，
      原样转发给 Agent API。
    - display_name: 文件名（含扩展名）。
    - media_type: MIME 类型。
    """

    encoded_payload: str
    display_name: str
    media_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encoded_payload": self.encoded_payload,
            "display_name": self.display_name,
            "media_type": self.media_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRef":
        return cls(
            encoded_payload=data.get("encoded_payload") or "",
            display_name=data.get("display_name") or "",
            media_type=data.get("media_type") or "application/octet-stream",
        )


@dataclass
class ConversationTurn:
    """会话中的一条消息。

    render_as_rich_text 默认：用户消息为 False，Agent 消息为 True；
    只要 is_from_user 为真就强制为 False。
    """

    text: str
    is_from_user: bool
    render_as_rich_text: Optional[bool] = None
    timestamp: datetime = field(default_factory=utcnow)
    attachments: Optional[List[FileRef]] = None

    def __post_init__(self) -> None:
        if self.is_from_user:
            self.render_as_rich_text = False
        elif self.render_as_rich_text is None:
            self.render_as_rich_text = True

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "is_from_user": self.is_from_user,
            "render_as_rich_text": self.render_as_rich_text,
            "timestamp": format_ts(self.timestamp),
            "attachments": [a.to_dict() for a in self.attachments] if self.attachments else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        raw_files = data.get("attachments")
        return cls(
            text=data.get("text") or "",
            is_from_user=bool(data.get("is_from_user", False)),
            render_as_rich_text=data.get("render_as_rich_text"),
            timestamp=parse_ts(data.get("timestamp")),
            attachments=[FileRef.from_dict(f) for f in raw_files] if raw_files else None,
        )


@dataclass
class Conversation:
    """某个 Agent 的会话。

    同一个 agent_id 在进程内只对应一个 Conversation 实例（由 SessionManager 缓存）。
    所有修改都应走下面的辅助方法，以便维护 dirty 标记；dirty 只在成功 commit 后清除，
    不参与持久化。
    """

    agent_id: str
    thread_id: Optional[str] = None
    last_response_id: Optional[str] = None
    turns: List[ConversationTurn] = field(default_factory=list)
    last_activity: datetime = field(default_factory=utcnow)
    agent_display_name: str = ""
    dirty: bool = field(default=False, compare=False, repr=False)

    def append_turn(self, turn: ConversationTurn) -> ConversationTurn:
        self.turns.append(turn)
        self.dirty = True
        return turn

    def remove_turn(self, turn: ConversationTurn) -> bool:
        # 按身份查找，两条文本相同的消息不能互相误删
        for idx, existing in enumerate(self.turns):
            if existing is turn:
                del self.turns[idx]
                self.dirty = True
                return True
        return False

    def contains_turn(self, turn: ConversationTurn) -> bool:
        return any(existing is turn for existing in self.turns)

    def update_turn_text(self, turn: ConversationTurn, text: str) -> bool:
        if not self.contains_turn(turn):
            return False
        if turn.text != text:
            turn.text = text
            self.dirty = True
        return True

    def set_continuity(self, thread_id: Optional[str], response_id: Optional[str]) -> None:
        """一次性替换 thread_id / last_response_id，空值不覆盖已有值。"""

        new_thread = thread_id or self.thread_id
        new_response = response_id or self.last_response_id
        if (new_thread, new_response) != (self.thread_id, self.last_response_id):
            self.thread_id, self.last_response_id = new_thread, new_response
            self.dirty = True

    def clear(self) -> None:
        self.turns.clear()
        self.thread_id = None
        self.last_response_id = None
        self.dirty = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "thread_id": self.thread_id,
            "last_response_id": self.last_response_id,
            "turns": [t.to_dict() for t in self.turns],
            "last_activity": format_ts(self.last_activity),
            "agent_display_name": self.agent_display_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            agent_id=data["agent_id"],
            thread_id=data.get("thread_id") or None,
            last_response_id=data.get("last_response_id") or None,
            turns=[ConversationTurn.from_dict(t) for t in data.get("turns") or []],
            last_activity=parse_ts(data.get("last_activity")),
            agent_display_name=data.get("agent_display_name") or "",
        )


@dataclass
class ConversationIndex:
    """持久化根对象：agent_id -> Conversation，以及最后激活的 agent_id。"""

    by_agent_id: Dict[str, Conversation] = field(default_factory=dict)
    last_active_agent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessions": {aid: conv.to_dict() for aid, conv in self.by_agent_id.items()},
            "last_active_agent_id": self.last_active_agent_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationIndex":
        sessions = data.get("sessions") or {}
        return cls(
            by_agent_id={aid: Conversation.from_dict(raw) for aid, raw in sessions.items()},
            last_active_agent_id=data.get("last_active_agent_id") or None,
        )


@dataclass(frozen=True)
class StreamEvent:
    """Transport 流中的单个事件。

    kind:
        - "connected": 已连上流式端点。
        - "created": 服务端创建了响应，携带 response_id。
        - "delta": 回答文本增量。
        - "reasoning": 推理步骤，仅记录日志。
        - "complete": 回答结束，携带 thread_id。
        - "error": 流内错误（包括 stream_error），携带 message。
        - "other": 未识别的事件类型，raw_kind 保留原始名称。
    """

    kind: StreamEventKind
    text: str = ""
    response_id: Optional[str] = None
    thread_id: Optional[str] = None
    message: Optional[str] = None
    raw_kind: Optional[str] = None

    @classmethod
    def connected(cls) -> "StreamEvent":
        return cls(kind="connected")

    @classmethod
    def created(cls, response_id: Optional[str]) -> "StreamEvent":
        return cls(kind="created", response_id=response_id)

    @classmethod
    def delta(cls, text: str) -> "StreamEvent":
        return cls(kind="delta", text=text)

    @classmethod
    def reasoning(cls) -> "StreamEvent":
        return cls(kind="reasoning")

    @classmethod
    def complete(cls, thread_id: Optional[str]) -> "StreamEvent":
        return cls(kind="complete", thread_id=thread_id)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(kind="error", message=message)

    @classmethod
    def other(cls, raw_kind: str) -> "StreamEvent":
        return cls(kind="other", raw_kind=raw_kind)


@dataclass
class AgentInfo:
    id: str
    name: str


@dataclass
class MessageResponse:
    """单次（非流式）调用的响应。"""

    agent_id: str
    thread_id: Optional[str]
    text: Optional[str]


@dataclass
class ExchangeRequest:
    """一次问答往返的统一描述（mode × 可选附件）。"""

    agent_id: str
    text: str
    mode: ExchangeMode = "streaming"
    attachment: Optional[FileRef] = None
    thread_id: Optional[str] = None

    @property
    def streaming(self) -> bool:
        return self.mode == "streaming"


@dataclass
class ExchangeOutcome:
    """run_exchange 的结果。

    - status: completed / failed / canceled。
    - text: 最终写入 Agent 消息的文本（取消时为空）。
    - committed: 终态 commit 是否成功写入存储。
    - store_error: commit 失败时的错误信息，内存状态不回滚。
    """

    status: ExchangeStatus
    text: str = ""
    thread_id: Optional[str] = None
    response_id: Optional[str] = None
    error: Optional[str] = None
    committed: bool = False
    store_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"
