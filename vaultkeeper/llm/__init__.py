from .base import BackendConfig, CancellationToken, InferenceSession, SessionState, TokenEvent
from .local_session import LocalInferenceSession
from .remote_session import RemoteInferenceSession
from .registry import SessionRegistry, create_session
