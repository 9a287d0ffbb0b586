"""
writers-room: multi-character dialog orchestration.

Actors exchange dialog over a shared channel, a Director supervises each
scene and records its transcript, and a Producer runs scenes in sequence.
"""

__version__ = "0.2.0"
