"""
Error taxonomy shared by the certificate, recording and export layers
"""


class SessionProxyError(Exception):
    """Base class for every error raised by sessionproxy"""


class StorageError(SessionProxyError):
    """Filesystem unavailable or unwritable"""


class CryptoError(SessionProxyError):
    """Key or certificate generation/parsing failed"""


class FormatError(SessionProxyError):
    """Malformed PEM material or malformed session document"""


class NotFoundError(SessionProxyError):
    """A certificate file or session document does not exist"""
