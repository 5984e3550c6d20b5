import json
import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from errors import ValidationError
from models import JobState

AnnotationType = Literal["Pyrodigal", "Prokka", "Bakta", "Feature_Types"]
InputType = Literal["Single_FASTA", "Multiple_FASTA", "Single_Genome", "Multiple_Genomes"]
PyTrain = Literal["longest", "individual", "meta"]
OlapFilt = Literal["none", "single-strand", "both-strand"]

CODON_RE = re.compile(r"^[ACGT]{3}$")


class ArtifactKind(str, Enum):
    PRIMARY_ANNOTATION = "primary-annotation"
    PRIMARY_SEQUENCE = "primary-sequence"
    LOG = "log"


# Download API names
API_ARTIFACT_NAMES = {
    "gff": ArtifactKind.PRIMARY_ANNOTATION,
    "fasta": ArtifactKind.PRIMARY_SEQUENCE,
    "log": ArtifactKind.LOG,
}
ARTIFACT_API_NAMES = {kind: name for name, kind in API_ARTIFACT_NAMES.items()}


class JobOptions(BaseModel):
    """Analysis options. Every value is checked here before it can reach a command line."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    annotation_type: AnnotationType = Field("Pyrodigal", alias="annotationType")
    input_type: InputType = Field("Single_FASTA", alias="inputType")
    min_len: int = Field(30, gt=0, alias="minLen")
    max_len: int = Field(100000, gt=0, alias="maxLen")
    min_orf: int = Field(99, gt=0, alias="minOrf")
    max_orf: int = Field(60000, gt=0, alias="maxOrf")
    amino_acid: bool = Field(False, alias="aminoAcid")
    gz_output: bool = Field(False, alias="gzOutput")
    verbose: bool = False
    py_train: PyTrain = Field("longest", alias="pyTrain")
    stop_codons: str = Field("TAG,TGA,TAA", alias="stopCodons")
    olap_filt: OlapFilt = Field("both-strand", alias="olapFilt")

    @field_validator("stop_codons", mode="before")
    @classmethod
    def _check_codons(cls, value: Any) -> str:
        if isinstance(value, (list, tuple)):
            tokens = [str(token) for token in value]
        elif isinstance(value, str):
            tokens = value.split(",")
        else:
            raise ValueError("must be a comma-separated list of codons")
        tokens = [token.strip().upper() for token in tokens]
        if not tokens or any(not CODON_RE.match(token) for token in tokens):
            raise ValueError("each stop codon must be three letters from A, C, G, T")
        return ",".join(tokens)

    @model_validator(mode="after")
    def _check_ranges(self) -> "JobOptions":
        if self.min_len > self.max_len:
            raise ValueError("minLen must not exceed maxLen")
        if self.min_orf > self.max_orf:
            raise ValueError("minOrf must not exceed maxOrf")
        return self


DEFAULT_OPTIONS = JobOptions()


def parse_options(raw: Union[None, str, bytes, dict, JobOptions]) -> JobOptions:
    """Validate an options document from a client.

    Accepts a JSON string (as sent by the upload form), a mapping or None
    (all defaults). Raises ValidationError with a readable summary.
    """
    if isinstance(raw, JobOptions):
        return raw
    if raw is None or (isinstance(raw, (str, bytes)) and not raw.strip()):
        return JobOptions()
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Options are not valid JSON: {e.msg}") from e
    if not isinstance(raw, dict):
        raise ValidationError("Options must be a JSON object")
    try:
        return JobOptions.model_validate(raw)
    except pydantic.ValidationError as e:
        problems = []
        for err in e.errors():
            loc = ".".join(str(part) for part in err["loc"]) or "options"
            problems.append(f"{loc}: {err['msg']}")
        raise ValidationError("Invalid options: " + "; ".join(problems)) from e


class PathInput(BaseModel):
    """Input already materialized on shared storage."""

    kind: Literal["path"] = "path"
    path: str
    filename: str


class ContentInput(BaseModel):
    """Input carried through the queue as base64, written out by the worker."""

    kind: Literal["content"] = "content"
    content: str
    filename: str


InputRef = Annotated[Union[PathInput, ContentInput], Field(discriminator="kind")]


class OutputArtifact(BaseModel):
    filename: str
    compressed: bool = False
    location: Optional[str] = None  # relative to the jobs directory
    content: Optional[str] = None  # base64, stateless-worker mode

    @model_validator(mode="after")
    def _one_representation(self) -> "OutputArtifact":
        if (self.location is None) == (self.content is None):
            raise ValueError("an artifact holds either a location or embedded content")
        return self


class JobResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    outputs: dict[ArtifactKind, OutputArtifact] = Field(default_factory=dict)


class JobPayload(BaseModel):
    """What a queue entry carries to the worker."""

    job_id: str
    filename: str
    input: InputRef
    options: JobOptions


class JobRecord(BaseModel):
    model_config = {"from_attributes": True}

    job_id: str
    filename: Optional[str] = None
    input_checksum: Optional[str] = None
    options: JobOptions
    input_ref: InputRef
    state: JobState = JobState.PENDING
    progress: int = 0
    attempts: int = 0
    result: Optional[JobResult] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0


# API responses

class SubmitResponse(BaseModel):
    job_id: str
    status: JobState
    filename: Optional[str] = None
    created_at: datetime


class JobOutputs(BaseModel):
    gff: Optional[str] = None
    fasta: Optional[str] = None
    log: Optional[str] = None


class JobStatusResponse(BaseModel):
    job_id: str
    status: JobState
    progress: int = 0
    attempts: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None
    outputs: Optional[JobOutputs] = None
    error: Optional[str] = None
    condition: Optional[str] = None
    message: Optional[str] = None
    queue_position: Optional[int] = None


class JobSummary(BaseModel):
    model_config = {"from_attributes": True}

    job_id: str
    filename: Optional[str] = None
    state: JobState
    progress: int = 0
    attempts: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None
    error_message: Optional[str] = None


class JobListResponse(BaseModel):
    items: list[JobSummary]
    total: int
    page: int
    size: int
    pages: int


class HealthResponse(BaseModel):
    status: str
    message: str
    queues: Optional[dict] = None


class QueueDebugResponse(BaseModel):
    queue: dict[str, int]
    waiting_jobs: list[dict]
    active_jobs: list[dict]
    workers: list[dict]
