"""
k8s-scaler: declarative scaling and reconciliation for multi-cluster
Vagrant/VirtualBox Kubernetes labs.
"""

__version__ = "1.0.0"
