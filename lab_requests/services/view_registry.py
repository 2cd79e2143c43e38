import logging
from collections import OrderedDict
from dataclasses import dataclass
from uuid import uuid4

from lab_requests.config import settings
from lab_requests.errors import NotFound, PermissionDenied
from lab_requests.services.lifecycle import LabLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class OpenView:
    view_id: str
    owner_id: str
    manager: LabLifecycleManager


class LabViewRegistry:
    """In-process table of mounted lab views, keyed by view id.

    Each view belongs to the user who opened it. `max_open_views` caps the
    views of one owner; past it that owner's oldest view is unmounted.
    """

    def __init__(self, max_open_views: int | None = None):
        self.max_open_views = max_open_views or settings.max_open_views
        self._views: OrderedDict[str, OpenView] = OrderedDict()

    def __len__(self) -> int:
        return len(self._views)

    def open(self, owner_id: str, manager: LabLifecycleManager) -> OpenView:
        owned = [view for view in self._views.values() if view.owner_id == owner_id]
        for evicted in owned[: max(len(owned) - self.max_open_views + 1, 0)]:
            del self._views[evicted.view_id]
            evicted.manager.unmount()
            logger.info("Evicted lab view %s for lab request %s", evicted.view_id, evicted.manager.lab_id)
        view = OpenView(view_id=str(uuid4()), owner_id=owner_id, manager=manager)
        self._views[view.view_id] = view
        return view

    def get(self, view_id: str, owner_id: str) -> OpenView:
        view = self._views.get(view_id)
        if view is None:
            raise NotFound(f"Lab view {view_id} not found")
        if view.owner_id != owner_id:
            raise PermissionDenied("This lab view belongs to another user")
        return view

    def close(self, view_id: str, owner_id: str) -> None:
        view = self.get(view_id, owner_id)
        del self._views[view.view_id]
        view.manager.unmount()

    def discard(self, view_id: str) -> None:
        view = self._views.pop(view_id, None)
        if view is not None:
            view.manager.unmount()

    def clear(self) -> None:
        for view in list(self._views.values()):
            view.manager.unmount()
        self._views.clear()


view_registry = LabViewRegistry()


def get_view_registry() -> LabViewRegistry:
    return view_registry
