"""Alert system module."""
from alerts.engine import AlertEngine
from alerts.config_store import ConfigStore
from alerts.evaluator import RuleEvaluator, SweepReport, Transition
from alerts.recorder import AlertRecorder
from alerts.dispatcher import ChannelDispatcher
from alerts.window import WindowAggregator
