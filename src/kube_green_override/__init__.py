# ABOUTME: kube-green override service package initialization
# ABOUTME: Exposes version information

"""
kube-green override service - manual sleep/wake overrides for GitOps-managed
environments.

=============================================================================
WHAT IS KUBE-GREEN?
=============================================================================

kube-green scales a namespace's Deployments to zero (and optionally suspends
its CronJobs) on a schedule, then restores them. Sleeping non-production
environments at night and over weekends saves most of their cost.

Schedules are sometimes wrong for today: a demo at 21:00 needs staging awake,
a broken environment should go to sleep now. This package handles those
manual overrides without breaking GitOps:

1. RECORD the override in Git (GitLab), where the schedules live
2. SYNC the exact commit with ArgoCD
3. CONFIRM against the workloads that the environment actually slept or woke
4. REPORT progress and outcome to Slack

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

kube_green_override/
├── __init__.py          <- Package entry point
├── config.py            <- Configuration management (env vars, settings)
├── models.py            <- Requests, attempts and the attempt state machine
├── errors.py            <- Error taxonomy
├── coordinator.py       <- Drives overrides from intent to outcome
├── commands.py          <- Slack slash-command grammar and verification
├── server.py            <- MCP server exposing the coordinator as tools
├── adapters/
│   ├── base.py          <- Adapter protocols
│   ├── gitlab.py        <- Desired-state store (overrides.yaml in Git)
│   ├── argocd.py        <- Sync trigger
│   ├── kubernetes.py    <- Schedule authority (applied workload state)
│   ├── slack.py         <- Notification sink
│   └── memory.py        <- In-process store and simulated cluster
└── utils/
    ├── client.py        <- Async REST client base with retries and masking
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Override guard and rate limiting
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
