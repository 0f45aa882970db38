"""
Paperless AI Enricher

A document enrichment service for Paperless-ngx that:
- Sends document text to a configurable AI provider for classification
- Keeps prompts inside the model's token budget
- Writes title, tags, correspondent, document type, date and custom fields back
- Records a reviewable processing history
"""

__version__ = "1.0.0"
