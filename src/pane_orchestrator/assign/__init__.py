"""Bulk work assignment across agent panes."""

from .bulk import (
    AllocationPlan,
    Assignment,
    AssignStatus,
    BulkAssignOutput,
    allocate,
    bulk_assign,
    filter_panes,
    parse_allocation,
    parse_skip_panes,
)
from .strategies import AssignStrategy, Candidates, WorkItem, build_candidates, parse_strategy, select_items
from .template import DEFAULT_TEMPLATE, TemplateError, load_template, render_template

__all__ = [
    "DEFAULT_TEMPLATE",
    "AllocationPlan",
    "AssignStatus",
    "AssignStrategy",
    "Assignment",
    "BulkAssignOutput",
    "Candidates",
    "TemplateError",
    "WorkItem",
    "allocate",
    "build_candidates",
    "bulk_assign",
    "filter_panes",
    "load_template",
    "parse_allocation",
    "parse_skip_panes",
    "parse_strategy",
    "render_template",
    "select_items",
]
