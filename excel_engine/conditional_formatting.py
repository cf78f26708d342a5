"""Conditional formatting rules.

Each rule is a range, a priority and one payload variant. The payload is a
tagged union discriminated by ``kind``, so adding a variant never touches
the others:
- cellIs: compare the cell value against one or two formulas
- colorScale / dataBar / iconSet: graded visual scales
- top10: top/bottom N (or N percent)
- aboveAverage: above/below average, optionally by standard deviations
- text: containsText / notContainsText / beginsWith / endsWith
- expression: arbitrary formula
- other: any rule type not modelled above, kept for round-trip

Rules are stored, never evaluated.
"""

from __future__ import annotations

import logging
from typing import Annotated, Dict, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .references import CellRange, parse_sqref, sqref_overlaps
from .styles import DifferentialStyle

logger = logging.getLogger(__name__)

CELL_IS_OPERATORS = (
    "lessThan", "lessThanOrEqual", "equal", "notEqual", "greaterThanOrEqual",
    "greaterThan", "between", "notBetween",
)
TEXT_OPERATORS = ("containsText", "notContainsText", "beginsWith", "endsWith")

DEFAULT_MIN_COLOR = "FFF8696B"
DEFAULT_MID_COLOR = "FFFFEB84"
DEFAULT_MAX_COLOR = "FF63BE7B"
DEFAULT_DATA_BAR_COLOR = "FF638EC6"


CfvoType = Literal["min", "max", "num", "percent", "percentile", "formula"]


class Cfvo(BaseModel):
    """Conditional format value object: a threshold on a scale."""
    type: CfvoType = "min"
    value: Optional[str] = None
    gte: bool = True


class CellIsRule(BaseModel):
    kind: Literal["cellIs"] = "cellIs"
    operator: str = "equal"
    formulas: List[str] = Field(default_factory=list)


class ColorScaleRule(BaseModel):
    kind: Literal["colorScale"] = "colorScale"
    cfvos: List[Cfvo] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)  # ARGB, one per cfvo


class DataBarRule(BaseModel):
    kind: Literal["dataBar"] = "dataBar"
    min_cfvo: Cfvo = Cfvo(type="min")
    max_cfvo: Cfvo = Cfvo(type="max")
    color: str = DEFAULT_DATA_BAR_COLOR
    show_value: bool = True
    min_length: Optional[int] = None
    max_length: Optional[int] = None


class IconSetRule(BaseModel):
    kind: Literal["iconSet"] = "iconSet"
    icon_set: str = "3TrafficLights1"
    cfvos: List[Cfvo] = Field(default_factory=list)
    show_value: bool = True
    reverse: bool = False
    percent: bool = True


class Top10Rule(BaseModel):
    kind: Literal["top10"] = "top10"
    rank: int = 10
    bottom: bool = False
    percent: bool = False


class AboveAverageRule(BaseModel):
    kind: Literal["aboveAverage"] = "aboveAverage"
    above_average: bool = True
    equal_average: bool = False
    std_dev: Optional[int] = None


class TextRule(BaseModel):
    kind: Literal["text"] = "text"
    operator: Literal["containsText", "notContainsText", "beginsWith", "endsWith"] = "containsText"
    text: str = ""
    formula: Optional[str] = None  # Generated from the range when omitted


class ExpressionRule(BaseModel):
    kind: Literal["expression"] = "expression"
    formula: str


class OtherRule(BaseModel):
    """A rule type kept verbatim (duplicateValues, containsBlanks, timePeriod, ...)."""
    kind: Literal["other"] = "other"
    rule_type: str
    attributes: Dict[str, str] = Field(default_factory=dict)
    formulas: List[str] = Field(default_factory=list)


RulePayload = Annotated[
    Union[
        CellIsRule, ColorScaleRule, DataBarRule, IconSetRule, Top10Rule,
        AboveAverageRule, TextRule, ExpressionRule, OtherRule,
    ],
    Field(discriminator="kind"),
]


class ConditionalFormattingRule(BaseModel):
    """One rule bound to a range."""
    sqref: str  # e.g. "A1:A10" or "A1:A10 C1:C10"
    priority: int
    payload: RulePayload
    dxf: Optional[DifferentialStyle] = None
    stop_if_true: bool = False

    @property
    def kind(self) -> str:
        return self.payload.kind


def text_rule_formula(operator: str, text: str, sqref: str) -> str:
    """The formula Excel writes alongside a text rule."""
    first = parse_sqref(sqref)[0]
    cell = CellRange(first.min_row, first.min_col, first.min_row, first.min_col).coord
    escaped = text.replace('"', '""')
    if operator == "containsText":
        return f'NOT(ISERROR(SEARCH("{escaped}",{cell})))'
    if operator == "notContainsText":
        return f'ISERROR(SEARCH("{escaped}",{cell}))'
    if operator == "beginsWith":
        return f'LEFT({cell},LEN("{escaped}"))="{escaped}"'
    return f'RIGHT({cell},LEN("{escaped}"))="{escaped}"'


class ConditionalFormattingList:
    """All conditional formatting rules of one worksheet.

    Priorities are assigned from a sheet-wide counter, so rules added to the
    same range keep insertion order.
    """

    def __init__(self) -> None:
        self._rules: List[ConditionalFormattingRule] = []
        self._next_priority = 1

    def add_rule(
        self,
        sqref: str,
        payload: RulePayload,
        dxf: Optional[DifferentialStyle] = None,
        stop_if_true: bool = False,
        priority: Optional[int] = None,
    ) -> ConditionalFormattingRule:
        """Attach a rule to a range and assign it the next priority."""
        ranges = parse_sqref(sqref)
        if not ranges:
            raise ValueError(f"Empty range for conditional formatting: {sqref!r}")
        normalized = " ".join(r.coord for r in ranges)
        if priority is None:
            priority = self._next_priority
        self._next_priority = max(self._next_priority, priority + 1)
        rule = ConditionalFormattingRule(
            sqref=normalized,
            priority=priority,
            payload=payload,
            dxf=dxf,
            stop_if_true=stop_if_true,
        )
        self._rules.append(rule)
        return rule

    def get_rules(self, sqref: Optional[str] = None, kind: Optional[str] = None) -> List[ConditionalFormattingRule]:
        """Rules overlapping ``sqref`` (all when None), optionally of one kind, by priority."""
        rules = self._rules
        if sqref is not None:
            targets = parse_sqref(sqref)
            rules = [r for r in rules if any(sqref_overlaps(r.sqref, t) for t in targets)]
        if kind is not None:
            rules = [r for r in rules if r.payload.kind == kind]
        return sorted(rules, key=lambda r: r.priority)

    def remove_rules(self, sqref: str) -> int:
        """Remove every rule overlapping ``sqref``; returns how many were removed."""
        targets = parse_sqref(sqref)
        keep = [r for r in self._rules if not any(sqref_overlaps(r.sqref, t) for t in targets)]
        removed = len(self._rules) - len(keep)
        self._rules = keep
        return removed

    def clear(self) -> None:
        self._rules = []

    def by_range(self) -> Dict[str, List[ConditionalFormattingRule]]:
        """Group rules by sqref in first-appearance order, each group by priority."""
        groups: Dict[str, List[ConditionalFormattingRule]] = {}
        for rule in sorted(self._rules, key=lambda r: r.priority):
            groups.setdefault(rule.sqref, []).append(rule)
        return groups

    def __iter__(self) -> Iterator[ConditionalFormattingRule]:
        return iter(sorted(self._rules, key=lambda r: r.priority))

    def __len__(self) -> int:
        return len(self._rules)
