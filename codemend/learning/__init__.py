from codemend.learning.loop import LearningLoop

__all__ = ["LearningLoop"]
