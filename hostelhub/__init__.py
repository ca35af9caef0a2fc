"""HostelHub reservation engine."""
