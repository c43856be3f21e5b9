from bitforge.events.aggregator import LogAggregator, LogSink, ObserverState

__all__ = ["LogAggregator", "LogSink", "ObserverState"]
