"""AI clients - OpenAI analysis, media transform service and usage logging."""
