"""Scoped key buffers.

Python cannot promise that no copy of a secret survives somewhere in the
interpreter, but every buffer we own is a bytearray that is overwritten with
zeros as soon as the ``with`` block that acquired it exits.
"""
from __future__ import annotations


class SecureBytes:
    """Mutable secret that zeroes itself on scope exit.

    Usage::

        with SecureBytes(derive_kek(...)) as kek:
            master = unwrap(..., kek.raw())
    """

    __slots__ = ("_buf", "_wiped")

    def __init__(self, data: bytes | bytearray):
        self._buf = bytearray(data)
        self._wiped = False
        if isinstance(data, bytearray):
            zero(data)

    def __enter__(self) -> "SecureBytes":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __len__(self) -> int:
        return len(self._buf)

    def __bool__(self) -> bool:
        return not self._wiped and len(self._buf) > 0

    def __repr__(self) -> str:
        return f"<SecureBytes len={len(self._buf)} wiped={self._wiped}>"

    def raw(self) -> bytes:
        if self._wiped:
            raise ValueError("key material already wiped")
        return bytes(self._buf)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        zero(self._buf)
        self._wiped = True


def zero(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0
