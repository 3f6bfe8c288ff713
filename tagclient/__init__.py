"""
Client core for a location-based multiplayer tag game.

Keeps a single realtime channel alive across unreliable mobile networks,
buffers actions generated while offline and replays them in order, and
scores incoming GPS data for physically implausible movement before it
reaches gameplay logic.

Typical wiring goes through ``tagclient.container.GameClientContainer``.
"""

__version__ = "0.1.0"
