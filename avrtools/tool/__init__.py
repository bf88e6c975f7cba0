from .errors import *
from .listener import *
from .launcher import *
from .delay import *
from .cache import *
from .config import *
from .invoker import *
