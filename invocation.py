"""Command line for the external StORF-Reporter analysis and the runner that executes it."""

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional

from errors import ExecutionError
from schemas import DEFAULT_OPTIONS, JobOptions
from utils import Settings

logger = logging.getLogger(__name__)

CONTAINER_INPUT_DIR = "/data"
CONTAINER_OUTPUT_DIR = "/output"


def build_analysis_args(options: JobOptions, input_file: str, output_dir: str) -> List[str]:
    """Arguments passed to the analysis image.

    Only values that differ from the defaults are appended, in a fixed order.
    """
    args = ["-anno", options.annotation_type, options.input_type, "-p", input_file, "-odir", output_dir]

    if options.min_len != DEFAULT_OPTIONS.min_len:
        args += ["-min_len", str(options.min_len)]
    if options.max_len != DEFAULT_OPTIONS.max_len:
        args += ["-max_len", str(options.max_len)]
    if options.min_orf != DEFAULT_OPTIONS.min_orf:
        args += ["-minorf", str(options.min_orf)]
    if options.max_orf != DEFAULT_OPTIONS.max_orf:
        args += ["-maxorf", str(options.max_orf)]
    if options.amino_acid:
        args += ["-aa", "True"]
    if options.gz_output:
        args += ["-gz", "True"]
    if options.verbose:
        args += ["-verbose", "True"]
    # training mode only means something to Pyrodigal
    if options.annotation_type == "Pyrodigal" and options.py_train != DEFAULT_OPTIONS.py_train:
        args += ["-py_train", options.py_train]
    if options.stop_codons != DEFAULT_OPTIONS.stop_codons:
        args += ["-codons", options.stop_codons]
    if options.olap_filt != DEFAULT_OPTIONS.olap_filt:
        args += ["-olap_filt", options.olap_filt]
    return args


def to_host_path(path: str, settings: Settings) -> str:
    """Translate a path under JOBS_DIR to where the container runtime sees it."""
    path = os.path.abspath(path)
    if not settings.host_jobs_dir:
        return path
    jobs_root = os.path.abspath(settings.jobs_dir)
    relative = os.path.relpath(path, jobs_root)
    if relative.startswith(os.pardir):
        return path
    return os.path.join(settings.host_jobs_dir, relative)


def build_command(settings: Settings, input_path: str, output_dir: str, options: JobOptions) -> List[str]:
    """Full argument vector: container runtime, mounts, image, analysis arguments."""
    mount_dir = to_host_path(os.path.dirname(input_path), settings)
    host_output_dir = to_host_path(output_dir, settings)
    input_file = os.path.basename(input_path)

    command = [
        settings.analysis_runtime, "run", "--rm",
        "--network", settings.analysis_network,
        "-v", f"{mount_dir}:{CONTAINER_INPUT_DIR}",
        "-v", f"{host_output_dir}:{CONTAINER_OUTPUT_DIR}",
        settings.analysis_image,
    ]
    command += build_analysis_args(options, f"{CONTAINER_INPUT_DIR}/{input_file}", CONTAINER_OUTPUT_DIR)
    return command


@dataclass
class RunResult:
    returncode: int
    stdout: str
    stderr: str


class SubprocessRunner:
    """Runs an argument vector (never through a shell) with a wall-clock limit."""

    def run(
        self,
        command: List[str],
        timeout: Optional[float] = None,
        on_start: Optional[Callable[[], None]] = None,
        cwd: Optional[str] = None,
    ) -> RunResult:
        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=cwd,
            )
        except OSError as e:
            raise ExecutionError(f"Could not start {command[0]}: {e.strerror or e}") from e

        try:
            if on_start is not None:
                on_start()
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            process.kill()
            process.communicate()
            raise ExecutionError(f"Analysis timed out after {int(timeout)} seconds") from e
        except BaseException:
            process.kill()
            process.communicate()
            raise
        return RunResult(process.returncode, stdout or "", stderr or "")
