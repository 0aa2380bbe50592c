"""Zone trust and kill-switch engine."""
