"""Pydantic models for normalized transcripts, durable records and session metadata."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Any, Literal, Optional

SyncStatus = Literal["pending", "synced"]


# ── Normalized transcript ───────────────────────────────────────────

class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    cacheRead: int = 0
    cacheCreation: int = 0
    reasoning: int = 0


class ContentItem(BaseModel):
    type: str  # "text" | "reasoning" | "tool_use" | "tool_result"
    text: str = ""
    toolUseId: Optional[str] = None
    toolName: Optional[str] = None
    input: dict[str, Any] = Field(default_factory=dict)
    output: Optional[str] = None
    status: Optional[str] = None  # inline tool state for formats that carry one
    isError: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class Event(BaseModel):
    id: str
    messageId: str = ""
    type: str  # "user" | "assistant" | "tool-result" | "system"
    subtype: Optional[str] = None
    timestamp: str = ""
    agentSessionId: str = ""
    gitBranch: Optional[str] = None
    model: Optional[str] = None
    usage: Optional[TokenUsage] = None
    stepUsage: Optional[TokenUsage] = None
    content: list[ContentItem] = Field(default_factory=list)
    isMeta: bool = False
    isSidechain: bool = False
    error: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubagentTranscript(BaseModel):
    agentId: str
    filePath: str
    slug: Optional[str] = None
    messages: list[Event] = Field(default_factory=list)


class SessionMetricsSnapshot(BaseModel):
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    tools: dict[str, int] = Field(default_factory=dict)


class ParsedSession(BaseModel):
    sessionId: str
    agentName: str
    agentVersion: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    messages: list[Event] = Field(default_factory=list)
    subagents: list[SubagentTranscript] = Field(default_factory=list)
    metrics: Optional[SessionMetricsSnapshot] = None


class SessionDescriptor(BaseModel):
    sessionId: str
    filePath: str
    projectPath: Optional[str] = None
    createdAt: str = ""
    updatedAt: Optional[str] = None
    agentName: str


# ── Metric deltas ───────────────────────────────────────────────────

class DeltaTokens(BaseModel):
    input: int = 0
    output: int = 0
    cacheRead: Optional[int] = None
    cacheCreation: Optional[int] = None


class ToolStatusCount(BaseModel):
    success: int = 0
    failure: int = 0


class FileOperation(BaseModel):
    type: str  # "read" | "write" | "edit" | "delete" | "glob" | "grep"
    path: Optional[str] = None
    pattern: Optional[str] = None
    format: Optional[str] = None
    language: Optional[str] = None
    linesAdded: Optional[int] = None
    linesRemoved: Optional[int] = None


class UserPrompt(BaseModel):
    count: int = 1
    text: str


class MetricDelta(BaseModel):
    recordId: str
    sessionId: str
    agentSessionId: str = ""
    timestamp: str = ""
    gitBranch: Optional[str] = None
    tokens: DeltaTokens = Field(default_factory=DeltaTokens)
    tools: Optional[dict[str, int]] = None
    toolStatus: Optional[dict[str, ToolStatusCount]] = None
    fileOperations: Optional[list[FileOperation]] = None
    models: Optional[list[str]] = None
    userPrompts: Optional[list[UserPrompt]] = None
    syncStatus: SyncStatus = "pending"
    syncAttempts: int = 0
    syncedAt: Optional[str] = None


# ── Conversation history ────────────────────────────────────────────

class Thought(BaseModel):
    id: str
    parent_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    in_progress: bool = False
    input_text: str = ""
    message: str = ""
    author_type: Literal["Agent", "Tool"] = "Agent"
    author_name: str = ""
    output_format: str = "text"
    error: bool = False
    children: list[Thought] = Field(default_factory=list)


class HistoryEntry(BaseModel):
    role: Literal["User", "Assistant"]
    message: str = ""
    message_raw: str = ""
    history_index: int
    date: str = ""
    response_time: Optional[float] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None
    assistant_id: Optional[str] = None
    thoughts: Optional[list[Thought]] = None
    file_names: Optional[list[str]] = None


class ConversationPayload(BaseModel):
    conversationId: str
    history: list[HistoryEntry] = Field(default_factory=list)


class ConversationPayloadRecord(BaseModel):
    recordId: str
    timestamp: str
    isTurnContinuation: bool = False
    historyIndices: list[int] = Field(default_factory=list)
    messageCount: int = 0
    payload: ConversationPayload
    status: SyncStatus = "pending"
    syncAttempts: int = 0
    syncedAt: Optional[str] = None


# ── Session metadata ────────────────────────────────────────────────

class SyncCursor(BaseModel):
    lastSyncedRecordIdentifier: Optional[str] = None
    lastSyncedSequenceIndex: int = -1


class Correlation(BaseModel):
    status: str = "matched"
    agentSessionId: str = ""
    agentSessionFile: str = ""
    retryCount: int = 0


class Session(BaseModel):
    sessionId: str
    agentName: str
    provider: str = ""
    project: Optional[str] = None
    model: Optional[str] = None
    startTime: str
    endTime: Optional[str] = None
    workingDirectory: str = ""
    gitBranch: Optional[str] = None
    status: Literal["active", "completed"] = "active"
    reason: Optional[str] = None
    correlation: Correlation = Field(default_factory=Correlation)
    sync: dict[str, SyncCursor] = Field(default_factory=dict)


# ── Results ─────────────────────────────────────────────────────────

class ProcessingResult(BaseModel):
    success: bool
    message: str = ""
    recordsProcessed: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProcessorSummary(BaseModel):
    success: bool
    message: str = ""
    recordsProcessed: int = 0


class AggregatedResult(BaseModel):
    success: bool
    processors: dict[str, ProcessorSummary] = Field(default_factory=dict)
    totalRecords: int = 0
    failedProcessors: list[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    success: bool
    message: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionMetric(BaseModel):
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
