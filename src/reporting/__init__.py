"""Plan and apply reports."""

from reporting.report import ReportWriter, render_apply, render_plan

__all__ = ['ReportWriter', 'render_apply', 'render_plan']
