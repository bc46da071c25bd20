"""Sybil collection of the Python blocks in docs/."""

import os
from pathlib import Path
from tempfile import mkdtemp
from typing import Any

import numpy as np
from sybil import Sybil
from sybil.parsers.markdown import PythonCodeBlockParser, SkipParser

_DOCS_DIR = Path(__file__).parent / "docs"


def _enter_scratch_dir(namespace: dict[str, Any]) -> None:
    """Seed the namespace and run the document from a fresh scratch directory."""
    namespace["np"] = np
    namespace["_previous_cwd"] = Path.cwd()
    os.chdir(mkdtemp(prefix="step_engine_docs_"))


def _leave_scratch_dir(namespace: dict[str, Any]) -> None:
    os.chdir(namespace["_previous_cwd"])


pytest_collect_file = Sybil(
    parsers=[PythonCodeBlockParser(), SkipParser()],
    path=str(_DOCS_DIR),
    pattern="*.md",
    setup=_enter_scratch_dir,
    teardown=_leave_scratch_dir,
).pytest()
