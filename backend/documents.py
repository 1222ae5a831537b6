"""
Document Registry - Lifecycle of uploaded document references.

An uploaded file is represented by a DocumentRef whose object_url is an
allocated resource. The registry hands these out and releases them when the
document is removed or the owning wizard is discarded.
"""

import logging
import uuid
from typing import Dict, Iterable, List, Optional, Union

from config.kyc_schema import DocumentRef
from config.settings import settings
from backend.errors import RecordValidationError
from backend.form_validator import validate_file_size, validate_file_type

logger = logging.getLogger(__name__)

# Only the most recent released URLs are remembered
RELEASED_HISTORY = 100


class DocumentRegistry:
    """
    Tracks live object URLs.

    Usage:
        with DocumentRegistry() as registry:
            doc = registry.create("pan.pdf", 2048, "application/pdf")
        # every URL is released here
    """

    def __init__(
        self,
        allowed_types: Optional[Iterable[str]] = None,
        max_size_mb: Optional[float] = None,
    ):
        self.allowed_types = list(allowed_types or settings.ALLOWED_DOCUMENT_EXTENSIONS)
        self.max_size_mb = max_size_mb if max_size_mb is not None else settings.MAX_FILE_SIZE_MB
        self._live: Dict[str, DocumentRef] = {}
        self.released: List[str] = []
        self.released_count = 0

    def create(self, name: str, size: int, mime_type: str = "") -> DocumentRef:
        """Register an upload. Raises RecordValidationError on a bad type or size."""
        problems = []
        is_valid, message = validate_file_type(name, mime_type, self.allowed_types)
        if not is_valid:
            problems.append(message)
        is_valid, message = validate_file_size(size, self.max_size_mb)
        if not is_valid:
            problems.append(message)
        if problems:
            raise RecordValidationError(f"Document '{name}' rejected", problems)

        doc_id = uuid.uuid4().hex
        doc = DocumentRef(
            id=doc_id,
            name=name,
            size=size,
            mime_type=mime_type,
            object_url=f"blob:kyc/{doc_id}",
        )
        self._live[doc.id] = doc
        logger.debug(f"[Documents] Allocated {doc.object_url} for {name}")
        return doc

    def release(self, document: Union[DocumentRef, str]) -> bool:
        """Release one document by ref or id. Returns False if it was not live."""
        doc_id = document.id if isinstance(document, DocumentRef) else document
        doc = self._live.pop(doc_id, None)
        if doc is None:
            return False
        self.released.append(doc.object_url)
        del self.released[:-RELEASED_HISTORY]
        self.released_count += 1
        logger.debug(f"[Documents] Released {doc.object_url}")
        return True

    def release_all(self) -> int:
        count = 0
        for doc_id in list(self._live):
            if self.release(doc_id):
                count += 1
        return count

    def get(self, doc_id: str) -> Optional[DocumentRef]:
        return self._live.get(doc_id)

    def is_live(self, document: Union[DocumentRef, str]) -> bool:
        doc_id = document.id if isinstance(document, DocumentRef) else document
        return doc_id in self._live

    @property
    def live_count(self) -> int:
        return len(self._live)

    def __enter__(self) -> "DocumentRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release_all()
