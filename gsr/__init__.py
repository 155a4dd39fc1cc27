"""Game Server Reconciler (GSR).

Keeps game server deployments on a Docker swarm converged with the desired
state recorded in a SQLite store:
 - observation ingest (swarm event stream + periodic resync)
 - drift classification with enforce / adopt / ignore policies
 - deterministic planning and idempotent apply
 - a store-backed, single-flight reconcile scheduler with backoff
"""
