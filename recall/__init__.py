"""
Recall

Embedding job pipeline and cascading semantic search over a productivity
journal: planning and review answers, work cycles and whole sessions.

Quick Start:
    from recall import EmbeddingManager

    mgr = EmbeddingManager()          # uses ~/.recall/
    mgr.on_session_saved(session)     # after the application commits a record
    mgr.start()                       # background processing and cleanup
    hits = mgr.cascading_search("what kept distracting me")

CLI Usage:
    recall status
    recall search "energy after lunch" --snippets
    recall run

Environment Variables:
    RECALL_STORE_PATH        - Override default store location
    RECALL_OPENAI_API_KEY    - API key for OpenAI providers
    RECALL_VERBOSE           - Set to 1 for debug logging
"""

# Configure quiet mode early (before any library imports)
import os
if not os.environ.get("RECALL_VERBOSE"):
    os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
    os.environ.setdefault("TRANSFORMERS_VERBOSITY", "error")
    os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
    os.environ.setdefault("HF_HUB_DISABLE_TELEMETRY", "1")

from .api import EmbeddingManager
from .records import CycleRecord, SessionRecord
from .search import SearchFilters, SearchOptions
from .types import Job, JobStatus, Level, RankedResult, RawSearchResult

__version__ = "0.1.0"
__all__ = [
    "EmbeddingManager",
    "SessionRecord",
    "CycleRecord",
    "SearchFilters",
    "SearchOptions",
    "Job",
    "JobStatus",
    "Level",
    "RankedResult",
    "RawSearchResult",
]
