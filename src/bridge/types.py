from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ImageURL(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: Optional[str] = None


class ContentPart(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    text: Optional[str] = None
    image_url: Union[ImageURL, str, None] = None

    def image_ref(self) -> str | None:
        if self.type != "image_url":
            return None
        if isinstance(self.image_url, str):
            return self.image_url or None
        if self.image_url is not None:
            return self.image_url.url or None
        return None


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant"]
    content: Union[str, List[ContentPart], None] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    messages: Any = None
    stream: Optional[bool] = False
    max_tokens: Optional[int] = None


# Replicate downscales input images by this factor; it is not client-tunable.
MAX_IMAGE_RESOLUTION = 0.5


class BackendInput(BaseModel):
    prompt: str
    system_prompt: str = ""
    max_tokens: int
    image: Optional[str] = None
    max_image_resolution: Literal[0.5] = MAX_IMAGE_RESOLUTION

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ModelInfo(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int = 0
    owned_by: str
    root: str
    parent: Optional[str] = None


class ModelListResponse(BaseModel):
    object: Literal["list"] = "list"
    data: List[ModelInfo] = Field(default_factory=list)


@dataclass(frozen=True, slots=True)
class OutputEvent:
    text: str


@dataclass(frozen=True, slots=True)
class DoneEvent:
    pass


@dataclass(frozen=True, slots=True)
class IgnoredEvent:
    reason: str


BackendEvent = Union[OutputEvent, DoneEvent]
ParsedEvent = Union[OutputEvent, DoneEvent, IgnoredEvent]

DONE = DoneEvent()

ZERO_USAGE: Dict[str, int] = {
    "prompt_tokens": 0,
    "completion_tokens": 0,
    "total_tokens": 0,
}


def zero_usage() -> Dict[str, int]:
    # Replicate exposes no token accounting.
    return dict(ZERO_USAGE)


@dataclass(slots=True)
class RequestContext:
    """Per-request correlation data passed explicitly through the pipeline."""

    req_id: str
    model: str
    start: float
    stream: bool = False
    fallback_used: bool = False
    chunks: int = 0
    output_chars: int = 0
    ignored_events: int = 0

    def record_output(self, text: str) -> None:
        self.chunks += 1
        self.output_chars += len(text)
