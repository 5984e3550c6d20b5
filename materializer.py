import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Union

from errors import NotFoundError, StorageError, ValidationError
from models import JobState
from schemas import API_ARTIFACT_NAMES, ARTIFACT_API_NAMES, ArtifactKind, OutputArtifact
from utils import decode_content

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIXES = {
    ArtifactKind.PRIMARY_ANNOTATION: (".gff", ".gff.gz"),
    ArtifactKind.PRIMARY_SEQUENCE: (".fa", ".fasta", ".fna", ".fa.gz", ".fasta.gz", ".fna.gz"),
}

GZIP_TYPE = "application/gzip"
TEXT_TYPE = "text/plain"


def classify_output(filename: str) -> Optional[ArtifactKind]:
    for kind, suffixes in ARTIFACT_SUFFIXES.items():
        if filename.endswith(suffixes):
            return kind
    return None


def scan_outputs(output_dir: str) -> Dict[ArtifactKind, str]:
    """Map each artifact kind to the first matching file name in ``output_dir``."""
    found = {}
    if not os.path.isdir(output_dir):
        return found
    for filename in sorted(os.listdir(output_dir)):
        kind = classify_output(filename)
        if kind is not None and kind not in found and os.path.isfile(os.path.join(output_dir, filename)):
            found[kind] = filename
    return found


def parse_artifact_kind(kind: Union[str, ArtifactKind]) -> ArtifactKind:
    if isinstance(kind, ArtifactKind):
        return kind
    if kind in API_ARTIFACT_NAMES:
        return API_ARTIFACT_NAMES[kind]
    try:
        return ArtifactKind(kind)
    except ValueError:
        raise ValidationError(f"Invalid file type: {kind}") from None


@dataclass
class Artifact:
    data: bytes
    content_type: str
    filename: str


class ResultMaterializer:
    """Serves job artifacts from disk or from bytes embedded in the job result."""

    def __init__(self, status, jobs_dir: str):
        self.status = status
        self.jobs_dir = os.path.abspath(jobs_dir)

    def _job_path(self, job_id: str, *parts: str) -> str:
        path = os.path.abspath(os.path.join(self.jobs_dir, job_id, *parts))
        if os.path.commonpath([path, self.jobs_dir]) != self.jobs_dir:
            raise NotFoundError("File not found")
        return path

    def _read_file(self, path: str) -> bytes:
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise NotFoundError("File not found") from None
        except OSError as e:
            logger.error(f"Could not read artifact: {e}")
            raise StorageError("Could not read result file") from e

    def _load(self, job_id: str, artifact: OutputArtifact) -> bytes:
        if artifact.content is not None:
            return decode_content(artifact.content)
        path = os.path.abspath(os.path.join(self.jobs_dir, artifact.location))
        if os.path.commonpath([path, self.jobs_dir]) != self.jobs_dir:
            logger.warning(f"Job {job_id} artifact points outside the jobs directory")
            raise NotFoundError("File not found")
        return self._read_file(path)

    def download(self, job_id: str, kind: Union[str, ArtifactKind]) -> Artifact:
        kind = parse_artifact_kind(kind)
        view = self.status.get_status(job_id)
        name = ARTIFACT_API_NAMES[kind]

        if kind == ArtifactKind.LOG:
            log_path = self._job_path(job_id, "stdout.log")
            if os.path.isfile(log_path):
                data = self._read_file(log_path)
            elif view.result is not None:
                data = view.result.stdout.encode("utf-8")
            else:
                raise NotFoundError("File not found")
            return Artifact(data, TEXT_TYPE, f"storf_results.{name}")

        if view.state != JobState.COMPLETED:
            raise NotFoundError(f"Job {job_id} has no {name} output yet")

        artifact = view.result.outputs.get(kind) if view.result else None
        if artifact is not None:
            data = self._load(job_id, artifact)
            compressed = artifact.compressed
        else:
            # results recorded without outputs: fall back to the file naming convention
            output_dir = self._job_path(job_id, "output")
            filename = scan_outputs(output_dir).get(kind)
            if filename is None:
                raise NotFoundError("File not found")
            data = self._read_file(os.path.join(output_dir, filename))
            compressed = filename.endswith(".gz")

        if compressed:
            return Artifact(data, GZIP_TYPE, f"storf_results.{name}.gz")
        return Artifact(data, TEXT_TYPE, f"storf_results.{name}")
