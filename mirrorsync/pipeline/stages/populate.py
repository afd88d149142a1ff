import asyncio
from typing import Any, AsyncIterator, Dict, List, TYPE_CHECKING

from ..base import PipelineStage
from ...core.models import SyncRunContext

if TYPE_CHECKING:
    from ...utils.progress_manager import ProgressManager


class PopulateStage(PipelineStage[List[Dict[str, Any]], asyncio.Task]):
    """Hands each batch to the write session without waiting for its acknowledgement"""

    def __init__(self, context: SyncRunContext, progress_manager: 'ProgressManager', logger=None):
        super().__init__("populate", context, logger)
        self.session = context.session
        self.progress_manager = progress_manager

    async def process(self, input_stream: AsyncIterator[List[Dict[str, Any]]]) -> AsyncIterator[asyncio.Task]:
        async for rows in input_stream:
            offset = self.session.offset
            task = self.session.write_batch(rows)
            self.progress_manager.update_progress(rows_submitted=len(rows), batches_submitted=1)
            self.logger.debug(f"Submitted {len(rows)} rows at offset {offset}")
            # Let in-flight appends make progress between source reads
            await asyncio.sleep(0)
            yield task
