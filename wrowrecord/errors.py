
# CUSTOM EXCEPTIONS
class WRowRecordError(Exception):
    pass

class ConfigError(WRowRecordError):
    pass

class TransportError(WRowRecordError):
    pass

class SerialNotConnectedError(TransportError):
    pass

class HandshakeError(WRowRecordError):
    '''Raised when the S4 has not acknowledged the USB handshake within the retry budget.'''
    def __init__(self, attempts: int):
        super().__init__(f"S4 did not acknowledge the USB handshake after {attempts} attempt(s)")
        self.attempts = attempts
