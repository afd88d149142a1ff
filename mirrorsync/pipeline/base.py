import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Generic, List, Optional, TypeVar

from ..core.models import SyncRunContext


T = TypeVar('T')
U = TypeVar('U')


@dataclass
class PipelineStats:
    """Counts of items that left each stage"""
    stage_outputs: dict = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0


class PipelineStage(ABC, Generic[T, U]):
    """Base class for all pipeline stages"""

    def __init__(self, name: str, context: SyncRunContext, logger: Optional[logging.Logger] = None):
        self.name = name
        self.context = context
        self.logger = logging.getLogger(f"{logger.name}.{name}") if logger else logging.getLogger(f"{__name__}.{name}")

    @abstractmethod
    def process(self, input_stream: AsyncIterator[T]) -> AsyncIterator[U]:
        """Process the input stream and yield output"""
        pass

    async def setup(self) -> None:
        """Setup stage before processing (optional override)"""
        pass

    async def teardown(self) -> None:
        """Cleanup after processing (optional override)"""
        pass


class Pipeline:
    """Chains stages over an input stream and drives it to completion"""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(f"{__name__}.pipeline.{name}")
        self.stages: List[PipelineStage] = []
        self.stats = PipelineStats()

    def add_stage(self, stage: PipelineStage) -> 'Pipeline':
        """Add a stage to the pipeline"""
        self.stages.append(stage)
        return self

    async def _counted(self, stage: PipelineStage, stream: AsyncIterator[Any]) -> AsyncIterator[Any]:
        self.stats.stage_outputs.setdefault(stage.name, 0)
        async for item in stream:
            self.stats.stage_outputs[stage.name] += 1
            yield item

    async def execute(self, input_stream: AsyncIterator[Any]) -> PipelineStats:
        """Run every stage over the input stream"""
        self.stats.start_time = datetime.now()
        set_up: List[PipelineStage] = []
        try:
            for stage in self.stages:
                await stage.setup()
                set_up.append(stage)

            current_stream = input_stream
            for stage in self.stages:
                current_stream = self._counted(stage, stage.process(current_stream))

            # Consume the final stream to drive the pipeline
            async for _ in current_stream:
                pass

            self.stats.end_time = datetime.now()
            self.logger.info(f"Pipeline {self.name} completed in {self.stats.duration_seconds:.2f}s")
        except Exception as e:
            self.stats.end_time = datetime.now()
            self.logger.error(f"Pipeline {self.name} failed: {e}")
            raise
        finally:
            for stage in reversed(set_up):
                try:
                    await stage.teardown()
                except Exception as e:
                    self.logger.error(f"Error in stage teardown {stage.name}: {e}")

        return self.stats
