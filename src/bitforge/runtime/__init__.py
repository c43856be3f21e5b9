from bitforge.runtime.engine import BuildEngine, JobHandle

__all__ = ["BuildEngine", "JobHandle"]
