"""
Kube ECR Refresher - Amazon ECR image pull secret refresher for Kubernetes

A Python application that keeps an Amazon ECR authorization token fresh and
projects it as a docker-registry secret into every target namespace.
"""

__version__ = "1.0.0"
__author__ = "Kube ECR Refresher Team"
