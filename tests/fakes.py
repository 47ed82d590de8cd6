"""Test doubles shared across convoy tests."""

from convoy.dispatch import Dispatcher
from convoy.exceptions import DispatchError
from convoy.models import StrandedConvoy


class FakeDispatcher(Dispatcher):
    """Records every call; fails dispatches for ids in ``fail_ids``."""

    def __init__(self, stranded=None, fail_ids=(), stranded_error=None):
        self.dispatched: list[tuple[str, str]] = []
        self.checked: list[str] = []
        self.stranded = list(stranded or [])
        self.fail_ids = set(fail_ids)
        self.stranded_error = stranded_error

    def dispatch(self, item_id, target):
        self.dispatched.append((item_id, target))
        if item_id in self.fail_ids:
            raise DispatchError(f"sling {item_id} failed", item_id=item_id, target=target)

    def query_stranded(self) -> list[StrandedConvoy]:
        if self.stranded_error is not None:
            raise self.stranded_error
        return list(self.stranded)

    def check_convoy(self, convoy_id):
        self.checked.append(convoy_id)

    @property
    def dispatched_ids(self) -> list[str]:
        return [item_id for item_id, _ in self.dispatched]
