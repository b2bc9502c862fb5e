from app.crm.imports.coercion import ENTITY_KEYS, Unusable, coerce, interpret_response
from app.crm.imports.duplicates import DuplicateDetector
from app.crm.imports.importer import IdMap, ReferenceGraphImporter
from app.crm.imports.json_recovery import extract_json, repair_json
from app.crm.imports.llm import AnthropicTextGenerator, Generation, TextGenerator, get_text_generator
from app.crm.imports.orchestrator import (
    ExtractionFailure,
    ExtractionOrchestrator,
    ExtractionProfile,
    import_profile,
    transcript_profile,
)
from app.crm.imports.preprocess import ContentTooLargeError, ensure_content_size, preprocess_content
from app.crm.imports.streaming import keepalive_stream
from app.crm.imports.transcripts import TranscriptTaskExtractor, normalize_tasks

__all__ = [
    "ENTITY_KEYS",
    "Unusable",
    "coerce",
    "interpret_response",
    "extract_json",
    "repair_json",
    "Generation",
    "TextGenerator",
    "AnthropicTextGenerator",
    "get_text_generator",
    "ExtractionProfile",
    "ExtractionOrchestrator",
    "ExtractionFailure",
    "import_profile",
    "transcript_profile",
    "ContentTooLargeError",
    "ensure_content_size",
    "preprocess_content",
    "keepalive_stream",
    "ReferenceGraphImporter",
    "IdMap",
    "DuplicateDetector",
    "TranscriptTaskExtractor",
    "normalize_tasks",
]
