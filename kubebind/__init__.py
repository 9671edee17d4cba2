"""
kubebind - expose remote endpoint records as in-cluster Services.

## Architecture

- **core**: settings, logging, errors, task lifecycle
- **datastructures**: BoundEndpoint model, conditions, port bitmap
- **bindings**: aggregation, diffing, the poller, the Service reconciler and
  the forwarder
- **transport**: binding handshake, per-port listeners, connection splicing
- **store**: cluster access (in-memory and Kubernetes)
- **remote**: remote endpoint API client
"""

__version__ = "0.1.0"
