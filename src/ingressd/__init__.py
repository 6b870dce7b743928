"""
ingressd: return-path routing for the Docker Swarm ingress mesh.

Tags connections with the id of the load-balancer node that received them
and routes container replies back out through that same node.
"""

__version__ = "0.3.0"
