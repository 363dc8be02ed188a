"""
Services package for the document-processing pipeline.

Contains:
- documents: stored bytes to document pages (PDF and image sources)
- token_limit: token estimate and safety gate
- page_processing: per-page prompts against the language model
- normalizer: model output to validated records
- processing_service: run creation, execution and read views
- processing_queue: bounded-concurrency scheduler with retry backoff
- aggregation: folder aggregate and progress counters
"""

from .documents import DocumentLoader
from .exceptions import DocumentLoadError, ProcessingRunError, TokenLimitExceededError
from .llm_client import LanguageModel, LlmCompletion, OpenRouterClient, get_llm_client
from .pdf_service import PDFService
from .processing_queue import ProcessingQueue
from .processing_service import ProcessingService, RunExecutor
from .repositories import Repositories
from .storage import FileStorage, LocalFileStorage

__all__ = [
    "DocumentLoadError",
    "DocumentLoader",
    "FileStorage",
    "LanguageModel",
    "LlmCompletion",
    "LocalFileStorage",
    "OpenRouterClient",
    "PDFService",
    "ProcessingQueue",
    "ProcessingRunError",
    "ProcessingService",
    "Repositories",
    "RunExecutor",
    "TokenLimitExceededError",
    "get_llm_client",
]
