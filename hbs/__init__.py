"""HAProxy Backend Sync (HBS).

Keeps one HAProxy backend's server list aligned with the ready endpoints of a
Kubernetes service:
 - mirrors the service's EndpointSlices/Endpoints and the cluster's nodes
 - maps them to backend servers (node IP substitution, port override)
 - pushes the result through the Data Plane API in a single transaction
 - retries failed passes with exponential backoff until one succeeds
"""

__version__ = "0.1.0"
