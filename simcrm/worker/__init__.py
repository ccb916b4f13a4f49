"""Job execution, progress tracking, dead letters and replay."""
