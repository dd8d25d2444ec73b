# ABOUTME: Utilities package initialization for the appsync controller
# ABOUTME: Contains shared utilities for the Kubernetes client, safety and logging

"""
appsync utilities package.

Shared utilities:
    - client.py: Kubernetes REST API client with retry logic
    - safety.py: Write guards, rate limiting, confirmation patterns, secret masking
    - logging.py: Structured logging with correlation IDs and audit trail
"""
