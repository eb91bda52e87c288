"""SQLModel database entities for persistent storage.
This module contains all SQLModel models used for database tables.
API schemas are in the schemas/ module.
"""

from sepal_server.entities.messages import Message
from sepal_server.entities.run_steps import RunStep
from sepal_server.entities.runs import Run
from sepal_server.entities.threads import Thread

__all__ = [
    "Thread",
    "Message",
    "Run",
    "RunStep",
]
