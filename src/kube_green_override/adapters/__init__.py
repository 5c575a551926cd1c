# ABOUTME: Adapters package initialization for the kube-green override service
# ABOUTME: Re-exports the adapter protocols and their implementations

"""
Adapters connecting the override coordinator to the outside world.

    - DesiredStateStore: GitlabStateStore, InMemoryStateStore
    - SyncTrigger: ArgocdSyncTrigger, SimulatedCluster
    - ScheduleAuthority: KubernetesScheduleAuthority, SimulatedCluster
    - NotificationSink: SlackNotifier
"""

from kube_green_override.adapters.argocd import ArgocdSyncTrigger
from kube_green_override.adapters.base import (
    DesiredStateStore,
    NotificationSink,
    ScheduleAuthority,
    SyncTrigger,
)
from kube_green_override.adapters.gitlab import GitlabStateStore
from kube_green_override.adapters.kubernetes import KubernetesScheduleAuthority
from kube_green_override.adapters.memory import InMemoryStateStore, SimulatedCluster
from kube_green_override.adapters.slack import SlackNotifier

__all__ = [
    "ArgocdSyncTrigger",
    "DesiredStateStore",
    "GitlabStateStore",
    "InMemoryStateStore",
    "KubernetesScheduleAuthority",
    "NotificationSink",
    "ScheduleAuthority",
    "SimulatedCluster",
    "SlackNotifier",
    "SyncTrigger",
]
