"""fleetroll: a self-hosted rolling-deployment controller.

Single-node controller for a fleet of stateless replicas behind a load
balancer. It provides:
 - health probing with consecutive-threshold state tracking
 - batch-wise rolling replacement of replicas (pause / resume / cancel)
 - cooldown-gated scale-out between a minimum and maximum size
 - durable fleet and update state so an interrupted update resumes

Replica creation and traffic membership are delegated to a Fleet Provider and
a Traffic Director (see fleetroll.providers).
"""

__version__ = "0.3.0"
