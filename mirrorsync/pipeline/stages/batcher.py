from typing import Any, AsyncIterator, Dict, List

from ..base import PipelineStage
from ...core.models import SyncRunContext


class BatcherStage(PipelineStage[Dict[str, Any], List[Dict[str, Any]]]):
    """Groups rows into lists of the job's batch size"""

    def __init__(self, context: SyncRunContext, logger=None):
        super().__init__("batcher", context, logger)
        self.target_batch_size = context.job.batch_size

    async def process(self, input_stream: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[List[Dict[str, Any]]]:
        batch: List[Dict[str, Any]] = []
        async for row in input_stream:
            batch.append(row)
            if len(batch) >= self.target_batch_size:
                yield batch
                batch = []
        if batch:
            yield batch
