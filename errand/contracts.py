"""Core data contracts for errand workflows."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationInfo,
    field_validator,
)

from .constants import DEFAULT_MORNING_HOUR


class LiteralParam(BaseModel):
    """A parameter value passed to a tool as-is."""

    kind: Literal["literal"] = "literal"
    value: Any = None


class Reference(BaseModel):
    """A parameter value taken from an earlier step's ``output_key``."""

    kind: Literal["ref"] = "ref"
    name: str

    def __str__(self) -> str:
        return f"${self.name}"


ParamValue = Annotated[Union[LiteralParam, Reference], Field(discriminator="kind")]


def ref(name: str) -> Reference:
    """Shorthand for ``Reference(name=name)``."""
    return Reference(name=name)


def lit(value: Any) -> LiteralParam:
    """Shorthand for ``LiteralParam(value=value)``."""
    return LiteralParam(value=value)


# validation context for params read back from storage or a document
STORED_PARAMS = {"tagged_params": True}


def _wrap_param(value: Any, tagged: bool) -> Any:
    if isinstance(value, (LiteralParam, Reference)):
        return value
    if tagged and isinstance(value, dict) and value.get("kind") in ("literal", "ref"):
        return value
    return LiteralParam(value=value)


class Step(BaseModel):
    """One tool invocation within a workflow plan."""

    id: int = Field(..., ge=1)
    tool: str
    params: Dict[str, ParamValue] = Field(default_factory=dict)
    output_key: Optional[str] = None
    description: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("params", mode="before")
    @classmethod
    def _wrap_literals(cls, value: Any, info: ValidationInfo) -> Any:
        # plain dicts are literals unless they come from serialized data
        if isinstance(value, dict):
            tagged = info.mode == "json" or bool((info.context or {}).get("tagged_params"))
            return {k: _wrap_param(v, tagged) for k, v in value.items()}
        return value

    def references(self) -> List[str]:
        """Names of the output keys this step consumes, in parameter order."""
        return [v.name for v in self.params.values() if isinstance(v, Reference)]


def load_step(data: Dict[str, Any]) -> Step:
    """Rebuild a step whose params carry their ``kind`` tags."""
    return Step.model_validate(data, context=STORED_PARAMS)


# ----------------------------------------------------------------------
# Triggers


class ScheduleTrigger(BaseModel):
    type: Literal["schedule"] = "schedule"
    frequency: Literal["daily", "weekly", "monthly"] = "daily"
    hour: int = Field(default=DEFAULT_MORNING_HOUR, ge=0, le=23)
    minute: Optional[int] = Field(default=0, ge=0, le=59)
    day_of_week: Optional[int] = Field(
        default=None, ge=0, le=6, description="Sunday=0 .. Saturday=6"
    )
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)


class FileWatchTrigger(BaseModel):
    type: Literal["file_watch"] = "file_watch"
    path: str
    pattern: Optional[str] = None


class EmailTrigger(BaseModel):
    type: Literal["email_match"] = "email_match"
    from_pattern: Optional[str] = None
    subject_pattern: Optional[str] = None


class ManualTrigger(BaseModel):
    type: Literal["manual"] = "manual"


Trigger = Annotated[
    Union[ScheduleTrigger, FileWatchTrigger, EmailTrigger, ManualTrigger],
    Field(discriminator="type"),
]

_trigger_adapter: TypeAdapter = TypeAdapter(Trigger)


def parse_trigger(data: Dict[str, Any] | None) -> Trigger:
    """Validate a stored trigger descriptor, defaulting to manual."""
    return _trigger_adapter.validate_python(data or {"type": "manual"})


class EmailEnvelope(BaseModel):
    """The parts of an incoming email that triggers can match on."""

    sender: str = ""
    subject: str = ""


# ----------------------------------------------------------------------
# Intent


class Source(BaseModel):
    """Where a workflow collects its input from."""

    type: Literal["local_files", "pdf", "web"]
    hint: Optional[str] = None
    path: Optional[str] = None
    fields: List[str] = Field(default_factory=list)


class Destination(BaseModel):
    """Where a workflow delivers its output."""

    type: Literal["file", "web_form"]
    path: Optional[str] = None
    selector: Optional[str] = None


class Intent(BaseModel):
    """Structured interpretation of a natural-language automation request."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    trigger: Trigger = Field(default_factory=ManualTrigger)
    sources: List[Source] = Field(default_factory=list)
    destinations: List[Destination] = Field(default_factory=list)
