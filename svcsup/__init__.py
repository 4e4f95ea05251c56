"""Docker Service Supervisor (svcsup).

Control-plane supervisor for containerized services that demonstrates:
 - multi-protocol health probing (http, tcp, postgres, mysql, redis)
 - crash-loop detection with automatic per-service lockdown
 - lifecycle control (start/stop/restart) with label-based container discovery

The core lives in health.py, lifecycle.py and crashloop.py; db.py and
docker_ops.py are the concrete store and runtime they are wired to by default.
"""
