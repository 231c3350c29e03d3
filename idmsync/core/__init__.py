"""Core Business Logic Module

This module holds the identity engine, independent of the HTTP layer.

Module Structure:
    - model.py, patch.py, diff.py : transfer objects, patches and diffs
    - mapping.py                  : schema registry and resource mappings
    - conn_object.py              : TO <-> connector object conversion
    - correlation.py              : correlation rules
    - propagation.py              : propagation tasks and their executor
    - provisioning.py             : storage write followed by propagation
    - pull.py, push.py            : reconciliation executors
    - actions.py                  : pull/push hooks
    - memberships.py              : set-memberships job
    - logic.py                    : authorized entry points (anys, remediations, tasks)

Usage Pattern:
    Modules are NOT auto-imported; import explicitly when needed:
        from idmsync.core.provisioning import ProvisioningManager
        from idmsync.core.errors import IdmError
"""
