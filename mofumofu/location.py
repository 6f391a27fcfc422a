from mofumofu.helpers import parse_number
from mofumofu.models import Coordinate


class ReportedLocation:
    """
    Location capability backed by what the device reported with the request.

    The phone asks the OS for foreground permission and a "balanced" fix and
    sends the outcome along: {"permission": "granted", "latitude": .., "longitude": ..}.
    """

    def __init__(self, granted: bool, coordinate=None, accuracy="balanced"):
        self.granted = granted
        self.coordinate = coordinate
        self.accuracy = accuracy

    @classmethod
    def from_payload(cls, data: dict):
        data = data or {}
        permission = data.get("permission", "granted")
        granted = permission is True or (isinstance(permission, str) and permission.lower() == "granted")
        coordinate = Coordinate.maybe(parse_number(data.get("latitude")), parse_number(data.get("longitude")))
        return cls(granted, coordinate, data.get("accuracy") or "balanced")

    def request_permission(self):
        return self.granted

    def current_position(self, accuracy="balanced"):
        if not self.granted:
            return None
        return self.coordinate
