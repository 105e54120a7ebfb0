# Models Package
# Entity descriptors and Pydantic request/result models

from .entities import *
from .streams import *
from .sync import *
