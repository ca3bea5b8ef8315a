"""
Jenkins EBS snapshot backup tooling: deploy the backup stack, rebuild Jenkins from a snapshot.
"""

__version__ = "1.0.0"
