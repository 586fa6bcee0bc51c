import ssl
from dataclasses import dataclass
from functools import cached_property


@dataclass(frozen=True)
class TlsConfig:
    """TLS settings of the default transport."""

    accept_invalid_certs: bool = False
    root_certificates_pem: tuple[bytes, ...] = ()
    root_certificates_der: tuple[bytes, ...] = ()
    use_system_roots: bool = True

    @cached_property
    def ssl_context(self) -> ssl.SSLContext:
        """Client SSLContext for these settings. Built once and shared by all connections."""
        if self.use_system_roots:
            ctx = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        else:
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        for pem in self.root_certificates_pem:
            ctx.load_verify_locations(cadata=pem.decode("ascii"))
        for der in self.root_certificates_der:
            ctx.load_verify_locations(cadata=der)
        if self.accept_invalid_certs:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        ctx.set_alpn_protocols(["http/1.1"])
        return ctx
