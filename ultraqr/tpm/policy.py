# ultraqr/tpm/policy.py
import hashlib
import logging
import struct
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional

from tpm2_pytss import TPM2_ALG, TPM2_CC, TPML_PCR_SELECTION

from ultraqr.errors import InvalidPolicySpec

logger = logging.getLogger(__name__)

# PCRs sealed by default: firmware, option ROMs, boot loader, kernel cmdline/initrd
DEFAULT_PCRS = "0,2,4,8,9"

PCR_COUNT = 24
PCR_SELECT_SIZE = PCR_COUNT // 8
DIGEST_SIZE = 32

_HASH_ALGS = {
    "sha256": TPM2_ALG.SHA256,
}


@dataclass(frozen=True)
class PCRSelection:
    """A set of PCR indices in one hash bank"""

    indices: FrozenSet[int] = field(default_factory=frozenset)
    hash_alg: str = "sha256"

    def __post_init__(self):
        if self.hash_alg not in _HASH_ALGS:
            raise InvalidPolicySpec(f"Unsupported PCR bank: {self.hash_alg}")
        for index in self.indices:
            if not 0 <= index < PCR_COUNT:
                raise InvalidPolicySpec(f"PCR index out of range: {index}")

    def __len__(self) -> int:
        return len(self.indices)

    def __str__(self) -> str:
        return f"{self.hash_alg}:{','.join(str(i) for i in sorted(self.indices))}"

    def to_tpml(self) -> TPML_PCR_SELECTION:
        """Build the TPM selection structure for this set"""
        if not self.indices:
            raise InvalidPolicySpec("Refusing to build a policy over an empty PCR selection")
        return TPML_PCR_SELECTION.parse(str(self))

    def bitmap(self) -> bytes:
        select = bytearray(PCR_SELECT_SIZE)
        for index in self.indices:
            select[index // 8] |= 1 << (index % 8)
        return bytes(select)

    def marshal(self) -> bytes:
        """TPML_PCR_SELECTION wire encoding holding a single bank"""
        return struct.pack(">IHB", 1, int(_HASH_ALGS[self.hash_alg]), PCR_SELECT_SIZE) + self.bitmap()


def parse_pcrs(spec: str) -> PCRSelection:
    """
    Parse a comma-separated list of PCR indices.

    Args:
        spec: String such as "0,2,4"; an empty string yields an empty selection

    Returns:
        PCRSelection holding the unique indices

    Raises:
        InvalidPolicySpec: If any token is not a non-negative integer in range
    """
    indices = set()
    if spec:
        for token in spec.split(","):
            token = token.strip()
            # isdigit() rejects "", "-1", "+1" and "1.0" alike
            if not token.isascii() or not token.isdigit():
                raise InvalidPolicySpec(f"Invalid PCR index {token!r} in {spec!r}")
            indices.add(int(token))

    selection = PCRSelection(frozenset(indices))
    logger.debug(f"Using the following PCRs: {selection}")
    return selection


def pcr_values_digest(values: Mapping[int, bytes], hash_alg: str = "sha256") -> bytes:
    """Digest of the concatenated PCR values, in ascending index order"""
    if hash_alg not in _HASH_ALGS:
        raise InvalidPolicySpec(f"Unsupported PCR bank: {hash_alg}")
    ctx = hashlib.sha256()
    for index in sorted(values):
        ctx.update(values[index])
    return ctx.digest()


def policy_pcr_digest(selection: PCRSelection, pcr_digest: bytes,
                      previous: Optional[bytes] = None) -> bytes:
    """
    Extend a policy digest with TPM2_PolicyPCR, as the TPM does.

    policyDigest' = H(policyDigest || TPM_CC_PolicyPCR || pcrs || pcrDigest)
    """
    if previous is None:
        previous = bytes(DIGEST_SIZE)
    ctx = hashlib.sha256()
    ctx.update(previous)
    ctx.update(struct.pack(">I", int(TPM2_CC.PolicyPCR)))
    ctx.update(selection.marshal())
    ctx.update(pcr_digest)
    return ctx.digest()


def expected_policy_digest(selection: PCRSelection, values: Mapping[int, bytes]) -> bytes:
    """Policy digest a key sealed to `selection` gets when the PCRs hold `values`"""
    missing = selection.indices - set(values)
    if missing:
        raise InvalidPolicySpec(f"No value given for PCRs {sorted(missing)}")
    selected = {index: values[index] for index in selection.indices}
    return policy_pcr_digest(selection, pcr_values_digest(selected, selection.hash_alg))
