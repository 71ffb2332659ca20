"""Domain services for the SMS bridge."""

from smsbridge_core.domain.services.audit import AuditService
from smsbridge_core.domain.services.decisions import DecisionService
from smsbridge_core.domain.services.dispatch import DispatchService
from smsbridge_core.domain.services.feeder import FeederService
from smsbridge_core.domain.services.instances import InstanceService
from smsbridge_core.domain.services.jobs import JobService
from smsbridge_core.domain.services.reconciler import ReconcilerService
from smsbridge_core.domain.services.template import TemplateCompiler, get_template_compiler
from smsbridge_core.domain.services.tenants import TenantCache, TenantService

__all__ = [
    "AuditService",
    "DecisionService",
    "DispatchService",
    "FeederService",
    "InstanceService",
    "JobService",
    "ReconcilerService",
    "TemplateCompiler",
    "TenantCache",
    "TenantService",
    "get_template_compiler",
]
