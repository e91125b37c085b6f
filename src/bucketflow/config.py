"""
Transfer configuration for bucketflow
"""

from dataclasses import dataclass

MiB = 1024 * 1024


@dataclass(frozen=True)
class TransferSettings:
    """
    Sizing knobs for the transfer engine.

    Payloads of at least ``multipart_threshold`` bytes go through multipart
    upload or ranged download. ``part_size`` must stay the same between a
    cancelled upload and its resumption, otherwise the open session is
    discarded.
    """
    multipart_threshold: int = 100 * MiB
    part_size: int = 5 * MiB
    range_size: int = 5 * MiB
    staging_suffix: str = ".part"

    def __post_init__(self):
        for name in ("multipart_threshold", "part_size", "range_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be greater than zero")
        if not self.staging_suffix:
            raise ValueError("staging_suffix must not be empty")
