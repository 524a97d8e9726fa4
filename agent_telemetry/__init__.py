"""Session telemetry pipeline for coding-assistant transcripts."""
