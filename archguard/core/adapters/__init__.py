"""Alternative scan gateway implementations.

* :class:`~archguard.core.adapters.clamd_socket.ClamdSocketGateway` — ClamAV
  daemon reached over its control socket.
"""

from archguard.core.adapters.clamd_socket import ClamdSocketGateway

__all__ = ["ClamdSocketGateway"]
