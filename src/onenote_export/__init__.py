"""OneNote to Markdown exporter: attachment acquisition and internal link resolution."""

__version__ = "0.1.0"
