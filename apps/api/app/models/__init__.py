from app.models.audit import AuditLog
from app.crm.models import (
	CRMCompany,
	CRMContact,
	CRMDeal,
	CRMNote,
	CRMPipeline,
	CRMPipelineStage,
	CRMTask,
)

__all__ = [
	"AuditLog",
	"CRMCompany",
	"CRMContact",
	"CRMDeal",
	"CRMNote",
	"CRMPipeline",
	"CRMPipelineStage",
	"CRMTask",
]
