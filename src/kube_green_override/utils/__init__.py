# ABOUTME: Utilities package initialization for the kube-green override service
# ABOUTME: Contains shared utilities for REST access, safety, and logging

"""
Shared utilities:
    - client.py: async REST client base with retry logic and secret masking
    - safety.py: override guard and rate limiting
    - logging.py: structured logging with correlation IDs and audit trail
"""
