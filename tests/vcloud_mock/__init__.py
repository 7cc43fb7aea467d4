"""vCloud Director Mock for Integration Testing.

In-memory stand-ins for the edge gateway and the login endpoint, so the
reconciler, the session cache and the sync loop can be exercised without a
vCloud Director installation.

Usage:
    from vcloud_mock import MockAuthenticator, MockEdgeGateway

    gateway = MockEdgeGateway()
    gateway.allocate("lb-net", "10.0.0.1")
    reconciler = LoadBalancerReconciler(gateway, network_name="lb-net", ...)
    reconciler.ensure_load_balancer("kubernetes", service, nodes)

    assert gateway.call_count("create_pool") == 1
"""

from .credential import MockAuthenticator, create_mock_credentials
from .gateway import MockCall, MockEdgeGateway

__all__ = [
    "MockAuthenticator",
    "MockCall",
    "MockEdgeGateway",
    "create_mock_credentials",
]
