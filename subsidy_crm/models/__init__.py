from subsidy_crm.models.user import User
from subsidy_crm.models.lead import Lead, LeadNote, LeadCall
from subsidy_crm.models.client import Client
from subsidy_crm.models.project import Project, Milestone, Task, TaskComment, TaskAttachment
from subsidy_crm.models.invoice import Invoice, InvoiceLineItem, InvoicePayment
from subsidy_crm.models.counter import Counter
from subsidy_crm.models.audit_log import AuditLog
from subsidy_crm.models.notification import Notification, NotificationRecipient
from subsidy_crm.models.app_setting import AppSetting
from subsidy_crm.models.catalog import Category, Scheme

__all__ = [
    "User",
    "Lead",
    "LeadNote",
    "LeadCall",
    "Client",
    "Project",
    "Milestone",
    "Task",
    "TaskComment",
    "TaskAttachment",
    "Invoice",
    "InvoiceLineItem",
    "InvoicePayment",
    "Counter",
    "AuditLog",
    "Notification",
    "NotificationRecipient",
    "AppSetting",
    "Category",
    "Scheme",
]
