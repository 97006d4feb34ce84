"""Report sinks and run summaries."""

from polyrev.output.report import MarkdownReportSink, ReportSink, write_summary

__all__ = ["MarkdownReportSink", "ReportSink", "write_summary"]
