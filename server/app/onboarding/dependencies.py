"""Request-scoped construction of the onboarding services."""

from fastapi import Depends

from ..config import Settings, get_settings
from ..core.services import notification_manager as notifications
from ..core.services.email import get_email_service
from ..core.services.storage import get_storage
from .services.documents import ObjectStorageDocuments
from .services.job_applications import JobApplicationService, JobApplicationStore
from .services.materializer import EmployeeRecordStore, Materializer
from .services.notification_relay import NotificationRelay, PubSubEmailRelay
from .services.onboarding_workflow import OnboardingWorkflow
from .services.review_pipeline import ReviewPipeline
from .services.session_store import SessionStore


def get_session_store(settings: Settings = Depends(get_settings)) -> SessionStore:
    return SessionStore(code_length=settings.access_code_length)


def get_notification_relay(settings: Settings = Depends(get_settings)) -> NotificationRelay:
    # The Redis manager is optional; email still goes out without it.
    return PubSubEmailRelay(settings, notifications.notification_manager, get_email_service())


def get_document_storage() -> ObjectStorageDocuments:
    return ObjectStorageDocuments(get_storage())


def get_workflow(
    settings: Settings = Depends(get_settings),
    store: SessionStore = Depends(get_session_store),
    relay: NotificationRelay = Depends(get_notification_relay),
) -> OnboardingWorkflow:
    return OnboardingWorkflow(store, relay, settings)


def get_upload_workflow(
    workflow: OnboardingWorkflow = Depends(get_workflow),
    documents: ObjectStorageDocuments = Depends(get_document_storage),
) -> OnboardingWorkflow:
    workflow.documents = documents
    return workflow


def get_materializer(
    store: SessionStore = Depends(get_session_store),
    relay: NotificationRelay = Depends(get_notification_relay),
) -> Materializer:
    return Materializer(store, EmployeeRecordStore(), relay)


def get_review_pipeline(
    store: SessionStore = Depends(get_session_store),
    relay: NotificationRelay = Depends(get_notification_relay),
    materializer: Materializer = Depends(get_materializer),
) -> ReviewPipeline:
    return ReviewPipeline(store, relay, materializer)


def get_job_application_service(
    settings: Settings = Depends(get_settings),
    workflow: OnboardingWorkflow = Depends(get_workflow),
) -> JobApplicationService:
    return JobApplicationService(JobApplicationStore(), workflow, settings)
