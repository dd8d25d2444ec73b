# ABOUTME: appsync package initialization
# ABOUTME: Exposes version information for the GitOps reconciliation controller

"""
appsync - GitOps reconciliation of Application resources onto Kubernetes clusters.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

appsync is a controller. It watches `Application` custom resources and keeps
each destination cluster matching the manifests rendered from the
Application's source (a git repository or a local directory):

1. RENDER the source at a resolved revision (plain YAML, Kustomize, Helm)
2. COMPARE desired manifests with the live objects the Application tracks
3. SYNC: run hooks, apply resources wave by wave (waiting for health
   between waves) and prune what is no longer desired

Applications can render other Applications ("App of Apps"); children are
just resources of their parent, with their own sync waves and health.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

appsync/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── config.py            <- Configuration management (env vars, settings)
├── errors.py            <- Engine error taxonomy (-> status conditions)
├── models.py            <- Application/AppProject models, resource keys
├── server.py            <- MCP status surface (list, diff, sync, delete)
├── cluster/
│   ├── base.py          <- ClusterAPI protocol and watch events
│   └── memory.py        <- In-memory cluster used by tests
├── engine/
│   ├── controller.py    <- Per-Application reconciliation loops
│   ├── sync.py          <- One cycle: compare, hooks, waves, prune
│   ├── render.py        <- Source resolution and manifest rendering
│   ├── diff.py          <- Desired versus live comparison
│   ├── waves.py         <- Wave ordering and health gating
│   ├── hooks.py         <- PreSync/Sync/PostSync/SyncFail hooks
│   ├── health.py        <- Health rules per kind
│   ├── pruner.py        <- Removal of resources no longer desired
│   ├── cascade.py       <- Finalizer-driven cascade deletion
│   ├── status.py        <- Status assembly and write-back
│   ├── observer.py      <- Watch-backed live-state cache
│   ├── apply.py         <- Guarded, retried, audited cluster writes
│   ├── retry.py         <- Backoff policies (tenacity)
│   ├── rbac.py          <- AppProject permission gate
│   ├── context.py       <- Per-cycle state and cancellation
│   └── resources.py     <- Manifest wrapper, annotations, tracking label
└── utils/
    ├── client.py        <- Kubernetes REST client (httpx)
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Write guards and rate limiting
"""

# =============================================================================
# VERSION INFORMATION
# =============================================================================

# Semantic Versioning (MAJOR.MINOR.PATCH). 0.x.x: the API may still change.
__version__ = "0.1.0"

# =============================================================================
# PUBLIC API DEFINITION
# =============================================================================

# The controller is run via the CLI entry point; modules are imported directly.
#
# Example usage:
#   >>> import appsync
#   >>> print(appsync.__version__)
#   '0.1.0'

__all__ = ["__version__"]
