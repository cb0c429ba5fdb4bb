from .dispatch import DispatchEngine
from .geo import GeoIndex
from .lifecycle import LifecycleController
from .locks import LockLedger
from .notifier import Notifier
from .rabbitmq import publisher

ledger = LockLedger()
geo_index = GeoIndex()
notifier = Notifier(publisher)
lifecycle = LifecycleController(ledger, notifier)
dispatcher = DispatchEngine(geo_index, ledger, notifier)


def get_ledger() -> LockLedger:
    return ledger


def get_geo_index() -> GeoIndex:
    return geo_index


def get_notifier() -> Notifier:
    return notifier


def get_lifecycle() -> LifecycleController:
    return lifecycle


def get_dispatcher() -> DispatchEngine:
    return dispatcher
