from .transform import TransformStage
from .batcher import BatcherStage
from .populate import PopulateStage

__all__ = ['TransformStage', 'BatcherStage', 'PopulateStage']
