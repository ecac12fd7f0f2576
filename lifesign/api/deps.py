"""Common API dependencies: service instances, family lookup, error mapping."""

from fastapi import HTTPException, status

from lifesign.database import engine
from lifesign.errors import (
    CodeNotFound,
    CodeSpaceExhausted,
    FamilyNotFound,
    LifeSignError,
    PersistenceUnavailable,
)
from lifesign.models.family import Family
from lifesign.services.code_registry import CodeRegistry
from lifesign.services.family_store import FamilyStore
from lifesign.services.monitor import MonitorWorker, SurvivalMonitor
from lifesign.services.notifier import Notifier
from lifesign.services.pairing import PairingService
from lifesign.services.push import build_transport
from lifesign.services.signals import SessionRegistry, SignalRecorder

# Module-level service singletons shared by all routers
family_store = FamilyStore(engine)
code_registry = CodeRegistry(family_store)
pairing_service = PairingService(family_store, code_registry)
notifier = Notifier(family_store, build_transport())
survival_monitor = SurvivalMonitor(family_store, notifier, code_registry)
monitor_worker = MonitorWorker(survival_monitor)
signal_recorder = SignalRecorder(family_store)
device_sessions = SessionRegistry()


def http_error(e: LifeSignError) -> HTTPException:
    """Translate a domain error into an HTTP error."""
    if isinstance(e, (CodeNotFound, FamilyNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (PersistenceUnavailable, CodeSpaceExhausted)):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


def get_family(family_id: str) -> Family:
    """Path dependency: load a family or 404."""
    try:
        return family_store.require(family_id)
    except LifeSignError as e:
        raise http_error(e)
