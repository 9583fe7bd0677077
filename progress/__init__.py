from progress.models import ProgressEvent, ProgressStatus, Phase, TERMINAL_STATUSES
from progress.adapter import ProgressAdapter, NarrationHandler
from progress.channel import ProgressBroker, ProgressChannel
