"""Processing pipelines: classification, conversion, transcription and analysis."""
