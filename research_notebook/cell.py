"""
Cell: one stage of the research workflow, with kind-specific metadata.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


class CellKind(str, Enum):
    """Closed set of workflow stages."""
    GOAL = "goal"
    INITIALIZATION = "initialization"
    ABSTRACT = "abstract"
    DATA_ASSESSMENT = "data_assessment"
    DATA_COLLECTION = "data_collection"
    ANALYSIS_PLAN = "analysis_plan"
    CODE = "code"
    ANALYSIS_EXECUTION = "analysis_execution"
    RESULT = "result"
    WRITEUP = "writeup"
    PROGRESS_LOG = "progress_log"


class CellStatus(str, Enum):
    """Lifecycle state of a cell."""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


CODE_KINDS = frozenset({CellKind.CODE, CellKind.ANALYSIS_EXECUTION})

KIND_LABELS = {
    CellKind.GOAL: "Research Goal",
    CellKind.INITIALIZATION: "Research Initialization",
    CellKind.ABSTRACT: "Research Abstract",
    CellKind.DATA_ASSESSMENT: "Data Assessment",
    CellKind.DATA_COLLECTION: "Data Collection",
    CellKind.ANALYSIS_PLAN: "Analysis Plan",
    CellKind.CODE: "Code Execution",
    CellKind.ANALYSIS_EXECUTION: "Analysis Execution",
    CellKind.RESULT: "Execution Results",
    CellKind.WRITEUP: "Research Write-up",
    CellKind.PROGRESS_LOG: "Progress Log",
}


def new_cell_id(kind: Union[CellKind, str]) -> str:
    """Generate a unique, sortable cell id prefixed with its kind."""
    prefix = kind.value if isinstance(kind, CellKind) else kind
    return f"{prefix}_{datetime.now().strftime('%Y%m%d%H%M%S%f')}_{uuid4().hex[:6]}"


# --------------------------------------------------------------------- #
# Routable entities
# --------------------------------------------------------------------- #

class Reference(BaseModel):
    """A research source found during initialization."""
    id: str = Field(default_factory=lambda: f"ref_{uuid4().hex[:10]}")
    title: str = "Unknown Reference"
    authors: Union[str, list[str]] = ""
    url: Optional[str] = None
    summary: str = ""
    doi: Optional[str] = None
    year: Optional[int] = None


class DataFile(BaseModel):
    """A data file discovered or generated during the workflow."""
    filename: str = Field(default_factory=lambda: f"data-{datetime.now().strftime('%Y%m%d%H%M%S')}.csv")
    content: str = ""
    file_type: str = "data"
    description: str = ""
    columns: list[str] = Field(default_factory=list)


class Variable(BaseModel):
    """A variable left in the kernel namespace by an analysis step."""
    name: str
    type: str = "unknown"
    value: Optional[str] = None
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class Library(BaseModel):
    """A third-party library imported by analysis code."""
    name: str
    version: Optional[str] = None
    description: str = ""
    category: str = "general"
    installed: bool = False


class Visualization(BaseModel):
    """A figure produced by an analysis step."""
    name: str
    type: str = "image/png"
    description: str = "Generated visualization"
    content: str = ""
    code: Optional[str] = None


class PlanStep(BaseModel):
    """One step of an analysis plan."""
    title: str = "Analysis step"
    description: str = ""
    code: Optional[str] = None


# --------------------------------------------------------------------- #
# Kind-specific metadata (tagged union on ``kind``)
# --------------------------------------------------------------------- #

class BaseMetadata(BaseModel):
    """Fields shared by every metadata shape: the streaming render state."""
    stream_lines: list[str] = Field(default_factory=list)
    is_streaming: bool = False


class GoalMetadata(BaseMetadata):
    kind: Literal["goal"] = "goal"


class InitializationMetadata(BaseMetadata):
    kind: Literal["initialization"] = "initialization"
    goal: str = ""
    references: list[Reference] = Field(default_factory=list)
    questions: list[str] = Field(default_factory=list)
    background_summary: Optional[str] = None


class AbstractMetadata(BaseMetadata):
    kind: Literal["abstract"] = "abstract"
    background_summary: str = ""


class DataAssessmentMetadata(BaseMetadata):
    kind: Literal["data_assessment"] = "data_assessment"
    goal: str = ""
    existing_data_files: list[DataFile] = Field(default_factory=list)
    assessment: Optional[str] = None


class DataCollectionMetadata(BaseMetadata):
    kind: Literal["data_collection"] = "data_collection"
    goal: str = ""
    data_needed: str = ""
    collection_plan: Optional[str] = None
    data_files: list[DataFile] = Field(default_factory=list)


class AnalysisPlanMetadata(BaseMetadata):
    kind: Literal["analysis_plan"] = "analysis_plan"
    goal: str = ""
    plan: Optional[str] = None
    steps: list[PlanStep] = Field(default_factory=list)
    available_data_files: list[DataFile] = Field(default_factory=list)


class CodeMetadata(BaseMetadata):
    kind: Literal["code", "analysis_execution"] = "code"
    step_order: int = 0
    total_steps: int = 1
    step_title: str = "Code Execution"
    thread_id: Optional[str] = None
    last_report: Optional[dict[str, Any]] = None


class ResultMetadata(BaseMetadata):
    kind: Literal["result"] = "result"
    execution_results: list[dict[str, Any]] = Field(default_factory=list)
    step_order: int = 0
    total_steps: int = 1
    thread_id: Optional[str] = None
    code_cell_id: Optional[str] = None
    code: Optional[str] = None
    variables: list[Variable] = Field(default_factory=list)
    libraries: list[Library] = Field(default_factory=list)
    visualizations: list[Visualization] = Field(default_factory=list)


class WriteupMetadata(BaseMetadata):
    kind: Literal["writeup"] = "writeup"
    execution_result_count: int = 0


class ProgressLogMetadata(BaseMetadata):
    kind: Literal["progress_log"] = "progress_log"


CellMetadata = Annotated[
    Union[
        GoalMetadata,
        InitializationMetadata,
        AbstractMetadata,
        DataAssessmentMetadata,
        DataCollectionMetadata,
        AnalysisPlanMetadata,
        CodeMetadata,
        ResultMetadata,
        WriteupMetadata,
        ProgressLogMetadata,
    ],
    Field(discriminator="kind"),
]


class Cell(BaseModel):
    """
    A single workflow cell.

    ``metadata`` must be the shape defined for ``kind``; when omitted, the
    empty metadata for the kind is used.
    """
    id: str
    kind: CellKind
    content: str = ""
    status: CellStatus = CellStatus.PENDING
    metadata: CellMetadata
    requires_user_action: bool = False
    can_proceed: bool = True
    timestamp: datetime = Field(default_factory=datetime.now)
    routed: bool = False
    error: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        kind = CellKind(data.get("kind", CellKind.GOAL))
        data["kind"] = kind
        if not data.get("id"):
            data["id"] = new_cell_id(kind)
        metadata = data.get("metadata")
        if metadata is None:
            data["metadata"] = {"kind": kind.value}
        elif isinstance(metadata, dict) and "kind" not in metadata:
            data["metadata"] = {**metadata, "kind": kind.value}
        return data

    @model_validator(mode="after")
    def _check_metadata_kind(self) -> "Cell":
        if self.metadata.kind != self.kind.value:
            raise ValueError(
                f"metadata of kind '{self.metadata.kind}' does not match cell kind '{self.kind.value}'"
            )
        return self

    @property
    def is_code(self) -> bool:
        return self.kind in CODE_KINDS

    @property
    def label(self) -> str:
        return KIND_LABELS.get(self.kind, "Research Entry")

    def touch(self):
        """Update the last-mutation timestamp."""
        self.timestamp = datetime.now()

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict) -> "Cell":
        """Create from dictionary."""
        return cls.model_validate(data)
