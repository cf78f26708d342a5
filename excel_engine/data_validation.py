"""Data validation rules (dropdowns, numeric/date/text-length limits, custom formulas)."""

from __future__ import annotations

from typing import Iterator, List, Literal, Optional

from pydantic import BaseModel

from .references import parse_sqref, sqref_overlaps

ValidationType = Literal["none", "list", "whole", "decimal", "date", "time", "textLength", "custom"]
ValidationOperator = Literal[
    "between", "notBetween", "equal", "notEqual", "lessThan",
    "lessThanOrEqual", "greaterThan", "greaterThanOrEqual",
]


class DataValidationRule(BaseModel):
    """A data validation rule applied to a range."""
    sqref: str  # e.g. "A1:A10"
    validation_type: ValidationType = "none"
    operator: Optional[ValidationOperator] = None
    formula1: Optional[str] = None
    formula2: Optional[str] = None
    allow_blank: bool = True
    show_dropdown: bool = True  # In-cell dropdown arrow for list rules
    show_input_message: bool = False
    show_error_message: bool = True
    prompt_title: Optional[str] = None
    prompt: Optional[str] = None
    error_title: Optional[str] = None
    error: Optional[str] = None
    error_style: Optional[Literal["stop", "warning", "information"]] = None

    @property
    def options(self) -> List[str]:
        """Literal options of a list rule ("a,b,c"); empty for range-backed lists."""
        if self.validation_type != "list" or not self.formula1:
            return []
        if not self.formula1.startswith('"'):
            return []
        return [opt.strip() for opt in self.formula1.strip('"').split(",")]


class DataValidationList:
    """All data validation rules of one worksheet."""

    def __init__(self) -> None:
        self._rules: List[DataValidationRule] = []

    def add(self, rule: DataValidationRule) -> DataValidationRule:
        parse_sqref(rule.sqref)
        self._rules.append(rule)
        return rule

    def get(self, sqref: Optional[str] = None) -> List[DataValidationRule]:
        if sqref is None:
            return list(self._rules)
        targets = parse_sqref(sqref)
        return [r for r in self._rules if any(sqref_overlaps(r.sqref, t) for t in targets)]

    def remove(self, sqref: str) -> int:
        targets = parse_sqref(sqref)
        keep = [r for r in self._rules if not any(sqref_overlaps(r.sqref, t) for t in targets)]
        removed = len(self._rules) - len(keep)
        self._rules = keep
        return removed

    def replace_all(self, rules: List[DataValidationRule]) -> None:
        self._rules = list(rules)

    def __iter__(self) -> Iterator[DataValidationRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)
