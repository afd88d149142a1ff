from typing import Any, AsyncIterator, Callable, Dict, Optional, TYPE_CHECKING

from ..base import PipelineStage
from ...core.exceptions import RowError
from ...core.models import SyncRunContext

if TYPE_CHECKING:
    from ...core.row_model import RowValidator
    from ...utils.progress_manager import ProgressManager

RowTransform = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


class TransformStage(PipelineStage[Dict[str, Any], Dict[str, Any]]):
    """Turn source documents into validated destination rows.

    A document the transform maps to None, or that raises or fails validation,
    contributes no row; the run carries on.
    """

    def __init__(self, context: SyncRunContext, transform: RowTransform, validator: 'RowValidator',
                 progress_manager: 'ProgressManager', logger=None, max_logged_errors: int = 50):
        super().__init__("transform", context, logger)
        self.transform = transform
        self.validator = validator
        self.progress_manager = progress_manager
        self.max_logged_errors = max_logged_errors
        self.row_errors = 0

    def _report(self, error: RowError) -> None:
        self.row_errors += 1
        if self.row_errors <= self.max_logged_errors:
            self.logger.warning(f"Skipping document {error.document_id}: {error}")
            if self.row_errors == self.max_logged_errors:
                self.logger.warning("Further skipped documents are logged at debug level")
        else:
            self.logger.debug(f"Skipping document {error.document_id}: {error}")

    def to_row(self, document: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        document_id = document.get('_id') if isinstance(document, dict) else None
        try:
            row = self.transform(document)
        except Exception as e:
            raise RowError(f"transform raised {type(e).__name__}: {e}", document_id) from e
        if row is None:
            return None
        if not isinstance(row, dict):
            raise RowError(f"transform returned {type(row).__name__}, expected a mapping", document_id)
        validated = self.validator.validate(row)
        return validated

    async def process(self, input_stream: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[Dict[str, Any]]:
        async for document in input_stream:
            self.progress_manager.update_progress(rows_read=1)
            try:
                row = self.to_row(document)
            except RowError as e:
                # Report the source document, not the row identity the validator saw
                if isinstance(document, dict) and '_id' in document:
                    e.document_id = document['_id']
                self._report(e)
                row = None
            if row is None:
                self.progress_manager.update_progress(rows_skipped=1)
                continue
            yield row
