"""Reconcilers module for converging AWS resources."""

from .base import BaseReconciler, Outcome, OutcomeKind, ReconcileAction, ReconcileResult
from .s3 import BucketReconciler
from .iam import RoleReconciler, ManagedPolicyReconciler, InstanceProfileReconciler, DefaultRoleCheck
from .policy_versions import PolicyVersionManager
from .elastic_beanstalk import ApplicationReconciler, EnvironmentReconciler, EnvironmentVariablesReconciler
from .ssl import HttpsListenerReconciler, HttpRedirectReconciler
from .network import NetworkTopology, NetworkTopologyResolver, LoadBalancer
from .rds import DatabaseReconciler
from .route53 import DnsRecordReconciler, DnsRecordResult, DnsRecordStatus

__all__ = [
    'BaseReconciler',
    'Outcome',
    'OutcomeKind',
    'ReconcileAction',
    'ReconcileResult',
    'BucketReconciler',
    'RoleReconciler',
    'ManagedPolicyReconciler',
    'InstanceProfileReconciler',
    'DefaultRoleCheck',
    'PolicyVersionManager',
    'ApplicationReconciler',
    'EnvironmentReconciler',
    'EnvironmentVariablesReconciler',
    'HttpsListenerReconciler',
    'HttpRedirectReconciler',
    'NetworkTopology',
    'NetworkTopologyResolver',
    'LoadBalancer',
    'DatabaseReconciler',
    'DnsRecordReconciler',
    'DnsRecordResult',
    'DnsRecordStatus',
]
