"""Shared fixtures: a throwaway database and jobs directory, a controllable
clock, and a runner that imitates the analysis container."""

import asyncio
import os
import sys
from datetime import datetime, timedelta

import pytest

# Project root = parent directory of this tests/ folder
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from invocation import RunResult  # noqa: E402
from services import build_services  # noqa: E402
from utils import Settings  # noqa: E402

THREE_SEQUENCES = (
    b">contig_1\nATGAAACGCATTAGCACCACCATTACCACCACCATCACCATTACCACAGGTAACGGTGCGGGCTGA\n"
    b">contig_2\nATGGCTTTTAAAGCGGTTGCGAAAGGCGTTTTACTGGCGCTGGCGTAA\n"
    b">contig_3\nATGCGTAAAGGCGAAGAGCTGTTCACTGGTGTCGTCCCTATTCTGGTGTAG\n"
)

GFF_BYTES = b"##gff-version 3\ncontig_1\tStORF-Reporter\tCDS\t1\t66\t.\t+\t0\tID=StORF_1\n"
FASTA_BYTES = b">StORF_1\nATGAAACGCATTAGCACCACC\n"


class FakeClock:
    def __init__(self, start=datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeRunner:
    """Writes result files into the output mount instead of starting a container.

    ``script`` is a list of per-call behaviours: a dict of output files to
    write (success) or an int exit code (failure). The last entry repeats.
    """

    def __init__(self, script=None, stdout="StORF-Reporter finished\n", stderr=""):
        self.script = script or [{"input_StORF-Reporter.gff": GFF_BYTES, "input_StORF-Reporter.fasta": FASTA_BYTES}]
        self.stdout = stdout
        self.stderr = stderr
        self.calls = []

    @staticmethod
    def mount(command, container_dir):
        for i, arg in enumerate(command):
            if arg == "-v" and command[i + 1].endswith(":" + container_dir):
                return command[i + 1].rsplit(":", 1)[0]
        raise AssertionError(f"no mount for {container_dir}")

    def run(self, command, timeout=None, on_start=None, cwd=None):
        step = self.script[min(len(self.calls), len(self.script) - 1)]
        self.calls.append(list(command))
        if on_start is not None:
            on_start()
        if isinstance(step, int):
            return RunResult(step, "", "Error: invalid FASTA header")
        output_dir = self.mount(command, "/output")
        for name, data in step.items():
            with open(os.path.join(output_dir, name), "wb") as f:
                f.write(data)
        return RunResult(0, self.stdout, self.stderr)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'jobs.db'}",
        jobs_dir=str(tmp_path / "jobs"),
        worker_pool_size=0,
        max_attempts=3,
        backoff_delay=2.0,
        lease_seconds=300,
        poll_interval=0.01,
        stuck_threshold=60,
        status_cache_ttl=0,
    )


@pytest.fixture
def services(settings, clock):
    services = build_services(settings, clock=clock)
    services.db.create_all()
    yield services
    services.close()


@pytest.fixture
def runner():
    return FakeRunner()


def submit(services, content=THREE_SEQUENCES, options=None, filename="genome.fasta"):
    return asyncio.run(services.jobs.submit(filename, content, options))
