"""FX rate alerts -- threshold evaluation and the periodic monitor."""

from fxcore.alerts.evaluation import Transition, evaluate
from fxcore.alerts.monitor import MonitorState, PairBackoff, RateAlertMonitor

__all__ = ["MonitorState", "PairBackoff", "RateAlertMonitor", "Transition", "evaluate"]
