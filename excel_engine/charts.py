"""Chart definitions.

Charts are stored and serialized as DrawingML chart parts; they are never
rendered. Charts read from a file keep their original XML so options the
model does not cover survive a round trip; editing a read chart's series
regenerates the XML from the model.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .drawing import DrawingAnchor, PartLink

ChartType = Literal["bar", "column", "line", "pie", "doughnut", "area", "scatter"]


class ChartSeries(BaseModel):
    """One data series; references are formulas like "Sheet1!$B$2:$B$5"."""
    values: str
    categories: Optional[str] = None  # X values for scatter charts
    title: Optional[str] = None  # Literal text or a cell reference
    color: Optional[str] = None  # RRGGBB


class Chart(BaseModel):
    kind: Literal["chart"] = "chart"
    anchor: DrawingAnchor
    chart_type: ChartType = "column"
    series: List[ChartSeries] = Field(default_factory=list)
    title: Optional[str] = None
    name: str = "Chart"
    legend_position: Optional[Literal["r", "l", "t", "b", "tr"]] = "r"
    show_data_labels: bool = False
    x_axis_title: Optional[str] = None
    y_axis_title: Optional[str] = None
    grouping: Literal["clustered", "stacked", "percentStacked", "standard"] = "clustered"
    style: Optional[int] = None  # Built-in chart style 1-48
    rounded_corners: bool = False
    shape_id: int = 0
    raw_xml: Optional[bytes] = Field(default=None, exclude=True)  # Original part when read from a file
    links: List[PartLink] = Field(default_factory=list)  # Relationships of the original part

    def add_series(self, values: str, categories: Optional[str] = None, title: Optional[str] = None) -> ChartSeries:
        series = ChartSeries(values=values, categories=categories, title=title)
        self.series.append(series)
        self.raw_xml = None
        return series
