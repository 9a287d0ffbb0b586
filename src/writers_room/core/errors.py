"""
Base exception for the writers_room package.
"""


class WritersRoomError(Exception):
    """Base class for all writers_room errors."""

    pass
