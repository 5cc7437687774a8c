"""Pydantic models describing scenario documents and backend definitions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
ExecutionMode = Literal["auto", "manual", "delayed", "bypass"]
StepType = Literal["request", "condition", "loop", "group"]
ComparisonOperator = Literal[
    "==",
    "!=",
    ">",
    ">=",
    "<",
    "<=",
    "contains",
    "notContains",
    "isEmpty",
    "isNotEmpty",
    "exists",
]
ParameterType = Literal["string", "number", "boolean", "object", "array", "any"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GraphModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def as_serializable(self) -> dict[str, Any]:
        """Return a JSON/YAML friendly payload using wire names."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Position(GraphModel):
    """Canvas coordinates, carried only for the external diagram renderer."""

    x: float = 0
    y: float = 0


class HeaderEntry(GraphModel):
    key: str
    value: str = ""
    enabled: bool = True


class Condition(GraphModel):
    """Single comparison against a parameter or a saved response."""

    id: str = ""
    source: Literal["params", "response"]
    field: str
    operator: ComparisonOperator
    value: Any = None
    step_id: Optional[str] = None

    @model_validator(mode="after")
    def _response_needs_step(self) -> "Condition":
        if self.source == "response" and not self.step_id:
            raise ValueError("response conditions must name the stepId (or alias) whose response they read")
        return self


class ConditionGroup(GraphModel):
    """Conditions combined with AND/OR; groups may nest."""

    id: str = ""
    operator: Literal["AND", "OR"]
    conditions: list[ConditionExpression] = Field(default_factory=list)


ConditionExpression = Union[ConditionGroup, Condition]
ConditionGroup.model_rebuild()


class Branch(GraphModel):
    """Conditional exit of a request or condition step."""

    id: str
    label: Optional[str] = None
    is_default: bool = False
    condition: Optional[ConditionExpression] = None
    next_step_id: str = ""


class RetryConfig(GraphModel):
    max_retries: int = Field(default=0, ge=0)
    retry_delay_ms: int = Field(default=0, ge=0)
    retry_on: list[int] = Field(default_factory=list)


class CountLoop(GraphModel):
    id: str = ""
    type: Literal["count"] = "count"
    count: Union[int, str] = 1
    max_iterations: Optional[int] = None


class ForEachLoop(GraphModel):
    id: str = ""
    type: Literal["forEach"] = "forEach"
    source: str
    item_alias: str = "item"
    index_alias: Optional[str] = None
    count_field: Optional[str] = None
    max_iterations: Optional[int] = None


class WhileLoop(GraphModel):
    id: str = ""
    type: Literal["while"] = "while"
    condition: ConditionExpression
    max_iterations: Optional[int] = None


Loop = Annotated[Union[CountLoop, ForEachLoop, WhileLoop], Field(discriminator="type")]


class BaseStep(GraphModel):
    """Properties shared by every step variant."""

    id: str
    name: str = ""
    description: str = ""
    execution_mode: ExecutionMode = "auto"
    delay_ms: Optional[int] = None
    condition: Optional[ConditionExpression] = None
    position: Position = Field(default_factory=Position)


def _check_single_default(step_id: str, branches: list[Branch]) -> None:
    defaults = [branch.id for branch in branches if branch.is_default]
    if len(defaults) > 1:
        raise ValueError(f"step '{step_id}' has more than one default branch: {defaults}")
    ids = [branch.id for branch in branches]
    if len(ids) != len(set(ids)):
        raise ValueError(f"step '{step_id}' has duplicate branch ids")


class RequestStep(BaseStep):
    """Step that sends an HTTP request to a configured backend."""

    type: Literal["request"] = "request"
    server_id: str
    method: HttpMethod = "GET"
    endpoint: str = "/"
    headers: list[HeaderEntry] = Field(default_factory=list)
    body: Any = None
    query_params: Optional[dict[str, str]] = None
    wait_for_response: bool = True
    save_response: bool = True
    response_alias: Optional[str] = None
    timeout: Optional[int] = None
    branches: list[Branch] = Field(default_factory=list)
    retry_config: Optional[RetryConfig] = None

    @model_validator(mode="after")
    def _single_default(self) -> "RequestStep":
        _check_single_default(self.id, self.branches)
        return self


class ConditionStep(BaseStep):
    type: Literal["condition"] = "condition"
    branches: list[Branch] = Field(default_factory=list)

    @model_validator(mode="after")
    def _single_default(self) -> "ConditionStep":
        _check_single_default(self.id, self.branches)
        return self


class LoopStep(BaseStep):
    type: Literal["loop"] = "loop"
    loop: Loop = Field(default_factory=CountLoop)
    step_ids: list[str] = Field(default_factory=list)
    variable_name: str = "loop"


class GroupStep(BaseStep):
    type: Literal["group"] = "group"
    step_ids: list[str] = Field(default_factory=list)
    collapsed: bool = False


Step = Annotated[Union[RequestStep, ConditionStep, LoopStep, GroupStep], Field(discriminator="type")]
ContainerStep = Union[LoopStep, GroupStep]


def is_container(step: Any) -> bool:
    return isinstance(step, (LoopStep, GroupStep))


def has_branches(step: Any) -> bool:
    return isinstance(step, (RequestStep, ConditionStep))


class ScenarioEdge(GraphModel):
    """Diagram connection between two steps."""

    id: str
    source_step_id: str
    target_step_id: str
    source_handle: Optional[str] = None
    label: Optional[str] = None
    animated: Optional[bool] = None


class ParameterValidation(GraphModel):
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    enum: Optional[list[Any]] = None


class ParameterSchema(GraphModel):
    """Declared input parameter of a scenario."""

    id: str = ""
    name: str
    type: ParameterType = "any"
    required: bool = False
    default_value: Any = None
    description: Optional[str] = None
    item_schema: Optional[ParameterSchema] = None
    properties: Optional[list[ParameterSchema]] = None
    validation: Optional[ParameterValidation] = None


class Scenario(GraphModel):
    """Complete scenario document: steps, topology and parameter schema."""

    id: str
    name: str
    description: Optional[str] = None
    version: str
    server_ids: list[str]
    parameter_schema: list[ParameterSchema]
    steps: list[Step]
    edges: list[ScenarioEdge]
    start_step_id: str
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def _unique_ids(self) -> "Scenario":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}'")
            seen.add(step.id)
        edge_ids = [edge.id for edge in self.edges]
        if len(edge_ids) != len(set(edge_ids)):
            raise ValueError("duplicate edge ids")
        return self

    def touch(self) -> None:
        self.updated_at = utc_now()


class ServerDefinition(GraphModel):
    """Backend a request step can be dispatched to."""

    id: str
    name: str = ""
    base_url: str
    headers: list[HeaderEntry] = Field(default_factory=list)
    timeout: int = Field(default=30000, gt=0)
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
