"""
Core shared utilities for the bare metal provisioning client.

- ironic_client: REST adapter for node state reads and provision requests
- provisioning: state model, planner, workflow driver and executor
- errors: exception hierarchy shared by both
"""
