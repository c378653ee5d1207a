"""
Notebook digitizer core package.

Uploaded photos of handwritten notebook pages are stored, queued and handed
to a worker that extracts a transcription, cleaned text, knowledge units
and suggested tags with a vision model. The `processing` subpackage holds
the page state machine, the job queue adapters, the page processor and the
persistence/storage/extraction capabilities it composes.
"""
