"""
Deployment handler.

Deploys DCAE service blueprints to Cloudify Manager on request, keeps the
service inventory in step, and propagates policy updates into running
deployments.
"""

__version__ = "4.1.0"
