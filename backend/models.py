import base64
import binascii
from enum import Enum
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator


Severity = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
ThreatLevel = Literal["clean", "low", "medium", "high", "critical", "unknown"]
ScanType = Literal["file", "url", "llm-endpoint"]
GuardRegion = Literal["us", "eu", "jp", "sg", "au", "in", "mea"]


class ProviderId(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


# ===== Chat =====

class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class FileAttachment(BaseModel):
    name: str
    mime_type: str = Field("application/octet-stream", description="MIME type reported by the browser")
    size_bytes: int = Field(0, ge=0)
    data: str = Field(..., description="Base64-encoded file contents")

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf" or self.name.lower().endswith(".pdf")

    def raw_bytes(self) -> bytes:
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"{self.name}: attachment data is not valid base64") from exc


class GuardConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    api_key: str = ""
    region: GuardRegion = "us"
    app_name: str = "chat-hub"


class GuardVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    action: Literal["Allow", "Block"] = "Allow"
    reasons: List[str] = Field(default_factory=list)
    result_id: Optional[str] = None
    risk_score: Optional[float] = None
    categories: List[str] = Field(default_factory=list)
    warning: Optional[str] = None
    message: Optional[str] = None


class GuardResults(BaseModel):
    input_validation: Optional[GuardVerdict] = None
    output_validation: Optional[GuardVerdict] = None


class ChatTurnRequest(BaseModel):
    provider: ProviderId = Field(..., description="LLM provider identifier")
    endpoint: Optional[str] = Field(None, description="Provider endpoint (config default if omitted)")
    api_key: str = ""
    model: str
    messages: List[ChatMessage] = Field(..., min_length=1, description="History ending with the new user message")
    attachments: List[FileAttachment] = Field(default_factory=list)
    guard: Optional[GuardConfig] = None

    @field_validator("messages")
    @classmethod
    def _ends_with_user_message(cls, messages: List[ChatMessage]) -> List[ChatMessage]:
        if messages and messages[-1].role != "user":
            raise ValueError("the last message must be the new user message")
        return messages


class ChatTurnResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    text: str
    model_id: str
    guard: GuardResults = Field(default_factory=GuardResults)
    warnings: List[str] = Field(default_factory=list)


class ModelsRequest(BaseModel):
    provider: ProviderId
    endpoint: Optional[str] = None
    api_key: str = ""


class ModelsResponse(BaseModel):
    models: List[str]


# ===== Scans =====

class AttackExample(BaseModel):
    prompt: str = ""
    response: str = ""
    evaluation: str = ""


class Finding(BaseModel):
    id: str
    severity: Severity
    description: str
    evidence: List[AttackExample] = Field(default_factory=list)
    package: Optional[str] = None
    fixed_version: Optional[str] = None


class Assessment(BaseModel):
    threat_level: ThreatLevel = "unknown"
    risk_score: int = Field(0, ge=0, le=100)
    malware_detected: bool = False
    findings: List[Finding] = Field(default_factory=list)


class ScanRecord(BaseModel):
    id: str
    target_name: str
    scan_type: ScanType
    scan_date: str
    duration_seconds: float
    threat_level: ThreatLevel
    risk_score: int = Field(0, ge=0, le=100)
    malware_detected: bool = False
    findings: List[Finding] = Field(default_factory=list)
    raw_report: Any = None
    extractor_version: int = 0


class LLMTargetConfig(BaseModel):
    endpoint: str = Field(..., description="OpenAI-compatible chat endpoint of the model under test")
    model: str
    api_key: str = ""
    system_prompt: Optional[str] = None
    objectives: List[str] = Field(default_factory=list)


class ScanRequest(BaseModel):
    target: str = Field(..., description="File path, registry URL or display name for LLM scans")
    scan_type: ScanType
    name: Optional[str] = None
    api_key: str = Field("", description="Scanner credential")
    region: Optional[str] = None
    llm: Optional[LLMTargetConfig] = None


class ScanHistoryResponse(BaseModel):
    scans: List[ScanRecord]
    total: int = 0


# ===== Guard log =====

class GuardLogEntry(BaseModel):
    id: str
    timestamp: str
    provider: str
    model: str
    input_action: Optional[str] = None
    output_action: Optional[str] = None
    blocked_stage: Optional[str] = None
    reasons: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class GuardStatisticsResponse(BaseModel):
    total_turns: int
    blocked_input: int
    blocked_output: int
    allowed: int
    warnings: int
    blocked_percentage: float
    retained_entries: int


class GuardLogResponse(BaseModel):
    entries: List[Dict[str, Any]]
    total: int = 0
