# aerbqa/results.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from aerbqa.values import FAIL, PASS, UNDETERMINED, normalize_remark


@dataclass
class SummaryEntry:
    specified: str
    measured: str
    tolerance: str
    remarks: str = UNDETERMINED


@dataclass
class TestResult:
    """Derived rows and verdict of one QA test."""

    __test__ = False

    key: str
    title: str
    rows: pd.DataFrame = field(default_factory=pd.DataFrame)
    remark: str = UNDETERMINED
    tolerance: str = ""
    extras: Dict[str, Any] = field(default_factory=dict)
    summary: List[SummaryEntry] = field(default_factory=list)
    # tolerance text printed once across all summary rows
    shared_tolerance: bool = False
    error: Optional[str] = None

    @property
    def status(self) -> str:
        r = normalize_remark(self.remark)
        if r == PASS:
            return "PASS"
        if r == FAIL:
            return "FAIL"
        return "INCOMPLETE"


def incomplete_result(key: str, title: str, error: str) -> TestResult:
    return TestResult(key=key, title=title, remark=UNDETERMINED, error=error)


def prefer_stored_remark(stored: Any, computed: str) -> str:
    """A saved Pass/Fail remark on the record wins over the recomputed one."""
    s = normalize_remark(stored)
    return s if s != UNDETERMINED else computed
