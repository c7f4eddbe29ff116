"""mads: declarative pods for a single podman host.

Watches a directory of pod definitions (or takes them from the command line)
and converges podman pods and consul services to match:
 - apply/delete reconciliation keyed on a content hash stored as a pod label
 - consul service registration with injected envoy sidecar proxies
 - a file watcher that turns directory changes into pod events

Pods without the mads label are never modified or deleted.
"""

__version__ = "0.1.0"
