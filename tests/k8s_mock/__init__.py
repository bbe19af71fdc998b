"""Kubernetes and policy engine mocks for integration testing.

This package provides in-memory stand-ins for the collaborators of the
constraint reconciler so the full reconciliation flow can be exercised
without a cluster.

Key Features:
- Custom objects API with resourceVersion conflicts, status subresource
  semantics and finalizer-gated deletion
- Error injection per API method
- Policy engine and metrics reporter that record every call

Usage:
    from k8s_mock import MockCustomObjectsApi, RecordingPolicyEngine

    api = MockCustomObjectsApi()
    api.create(make_constraint("K8sRequiredLabels", "ns-must-have-owner"))
    store = KubernetesConstraintStore(api, group=GROUP, version=VERSION)
"""

from .api import GROUP, VERSION, MockCustomObjectsApi, make_constraint
from .engine import RecordingPolicyEngine
from .reporter import RecordingReporter

__all__ = [
    "GROUP",
    "VERSION",
    "MockCustomObjectsApi",
    "RecordingPolicyEngine",
    "RecordingReporter",
    "make_constraint",
]
