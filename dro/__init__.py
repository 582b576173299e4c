"""Deployment Release Orchestrator (DRO).

Single-host release orchestrator for a containerized web service:
 - reconciles the environment file and renders the service manifest
 - refuses to start on a nearly full disk
 - snapshots manifest, config and data before touching anything
 - rolls out the new images and gates cutover on a readiness probe
 - rolls back to the newest snapshot when the release does not come up
"""
