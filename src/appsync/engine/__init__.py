# ABOUTME: Reconciliation engine package for the appsync controller
# ABOUTME: Render, observe, diff, apply in waves, run hooks, prune and cascade delete

"""
appsync reconciliation engine.

One reconciliation cycle flows through these modules:

    rbac     -> project gate (source, destination, kinds)
    render   -> checkout + plain YAML / Kustomize / Helm rendering
    diff     -> desired vs live comparison
    hooks    -> PreSync / Sync / PostSync / SyncFail lifecycle hooks
    waves    -> ordered, health-gated application of changes
    pruner   -> deletion of resources no longer declared
    status   -> write-back of sync/health/conditions

sync.SyncPipeline strings them together; controller.ApplicationController
runs one loop per Application around it, and cascade.CascadeDeleter handles
Application deletion.
"""
