from .tenant import Tenant, ProviderConnection
from .raw_event import RawEvent
from .call import Call
from .voicemail import Voicemail
from .user_mapping import UserMapping


__all__ = ["Tenant", "ProviderConnection", "RawEvent", "Call", "Voicemail", "UserMapping"]
