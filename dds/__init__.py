"""
Dynamic Device Scaler controller package.

Modules:
- state: snapshot types for claims, slices, nodes, policy and provisioning objects
- config: controller settings and policy ConfigMap parsing
- errors: error taxonomy
- cluster_client: narrow cluster access interface and its Kubernetes implementation
- collector: builds one immutable cluster snapshot per reconcile cycle
- usage: last-used stamping for degraded devices still serving pods
- reschedule: failed/stuck claim detection and reschedule signalling
- scaling: per node, per model attach/detach decisions
- retry: bounded retry for conflicting writes
- actuator: conflict-safe mutations against the cluster
- labels: node capability labels derived from coexistence rules
- watcher: claim and slice watches triggering reconciles
- controller: reconcile cycle and timer/watch driven run loop
- api: health and status endpoints
"""
