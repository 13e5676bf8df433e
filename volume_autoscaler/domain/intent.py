from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

DEFAULT_THRESHOLD_PERCENT = 80
DEFAULT_INCREASE_PERCENT = 20
DEFAULT_POLL_INTERVAL = timedelta(seconds=60)
DEFAULT_COOLDOWN_PERIOD = timedelta(minutes=5)
DEFAULT_METRICS_ENDPOINT = "http://prometheus.monitoring.svc.cluster.local:9090"


@dataclass(frozen=True)
class SelectorRequirement:
    key: str
    operator: str
    values: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class LabelSelector:
    match_labels: Dict[str, str] = field(default_factory=dict)
    match_expressions: List[SelectorRequirement] = field(default_factory=list)


@dataclass(frozen=True)
class VolumeTarget:
    volume_name: Optional[str] = None
    selector: Optional[LabelSelector] = None


@dataclass(frozen=True)
class Intent:
    name: str
    namespace: str
    target: VolumeTarget
    max_size: int
    threshold_percent: int = DEFAULT_THRESHOLD_PERCENT
    inode_threshold_percent: int = 0
    increase_percent: int = DEFAULT_INCREASE_PERCENT
    increase_minimum: int = 0
    poll_interval: timedelta = DEFAULT_POLL_INTERVAL
    cooldown_period: timedelta = DEFAULT_COOLDOWN_PERIOD
    metrics_endpoint: str = DEFAULT_METRICS_ENDPOINT
    generation: int = 0
    uid: str = ""

    @property
    def inode_check_enabled(self) -> bool:
        return self.inode_threshold_percent > 0


"""
apiVersion: autoscaling.volume-autoscaler.io/v1alpha1
kind: VolumeAutoscaler
spec:
  target: {volumeName: data-postgres-0}     # or {selector: {matchLabels: {app: postgres}}}
  thresholdPercent: 80
  maxSize: 200Gi
  increasePercent: 20
  increaseMinimum: 10Gi
  pollInterval: 60s
  cooldownPeriod: 5m
"""
