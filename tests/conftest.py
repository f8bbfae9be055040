# tests/conftest.py
import hashlib
import itertools
import logging
import os
import struct

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature
from tpm2_pytss import (
    TPM2_ALG,
    TPM2_RC,
    TPM2_SE,
    TPM2B_DIGEST,
    TPM2B_ECC_PARAMETER,
    TPM2B_PRIVATE,
    TPMS_SIGNATURE_ECC,
    TPMT_SIGNATURE,
    TPMU_SIGNATURE,
    TSS2_Exception,
)

from ultraqr.helper.config import UltraQRConfig
from ultraqr.tpm.connection import TPMConnection
from ultraqr.tpm.key_manager import signing_key_template
from ultraqr.tpm.policy import PCRSelection, pcr_values_digest, policy_pcr_digest, parse_pcrs

# Disable logging during tests to reduce noise
logging.getLogger('ultraqr').setLevel(logging.ERROR)


def selection_from_tpml(pcrs) -> PCRSelection:
    """Decode the indices out of a marshaled TPML_PCR_SELECTION"""
    data = pcrs.marshal()
    (count,) = struct.unpack_from(">I", data, 0)
    offset = 4
    indices = set()
    for _ in range(count):
        _, size = struct.unpack_from(">HB", data, offset)
        offset += 3
        bitmap = data[offset:offset + size]
        offset += size
        for byte_index, byte in enumerate(bitmap):
            for bit in range(8):
                if byte & (1 << bit):
                    indices.add(byte_index * 8 + bit)
    return PCRSelection(frozenset(indices))


class FakeTPM:
    """Persistent state of a simulated TPM: PCR banks and the wrapping secret"""

    def __init__(self):
        self.pcrs = {index: bytes(32) for index in range(24)}
        self.seed = os.urandom(16)
        self.wrapped = {}

    def extend(self, index: int, data: bytes) -> None:
        measurement = hashlib.sha256(data).digest()
        self.pcrs[index] = hashlib.sha256(self.pcrs[index] + measurement).digest()


class FakeESAPI:
    """
    In-memory stand-in for tpm2_pytss.ESAPI covering the commands UltraQR uses.

    Transient handles live only as long as this context, like a real TPM
    resource manager connection.
    """

    def __init__(self, tpm: FakeTPM, tcti=None):
        self.tpm = tpm
        self.tcti = tcti
        self.objects = {}
        self.sessions = {}
        self.flushed = []
        self.closed = False
        self.fail_on = set()
        self.calls = []
        self._handles = itertools.count(0x80000001)

    @property
    def live_handles(self):
        return list(self.objects) + list(self.sessions)

    def _enter(self, name):
        if self.closed:
            raise TSS2_Exception(TPM2_RC.FAILURE)
        self.calls.append(name)
        if name in self.fail_on:
            raise TSS2_Exception(TPM2_RC.FAILURE)

    def create_primary(self, in_sensitive, in_public, primary_handle=None, outside_info=None, creation_pcr=None):
        self._enter("create_primary")
        handle = next(self._handles)
        self.objects[handle] = {"kind": "primary", "public": in_public}
        return handle, in_public, None, None, None

    def start_auth_session(self, tpm_key, bind, session_type, symmetric, auth_hash, **kwargs):
        self._enter("start_auth_session")
        handle = next(self._handles)
        self.sessions[handle] = {"type": session_type, "digest": bytes(32)}
        return handle

    def policy_pcr(self, policy_session, pcr_digest, pcrs, **kwargs):
        self._enter("policy_pcr")
        session = self.sessions.get(policy_session)
        if session is None:
            raise TSS2_Exception(TPM2_RC.HANDLE)
        selection = selection_from_tpml(pcrs)
        live = pcr_values_digest({index: self.tpm.pcrs[index] for index in selection.indices})
        expected = bytes(pcr_digest)
        if expected and expected != live:
            raise TSS2_Exception(TPM2_RC.VALUE)
        session["digest"] = policy_pcr_digest(selection, live, previous=session["digest"])

    def policy_get_digest(self, policy_session, **kwargs):
        self._enter("policy_get_digest")
        return TPM2B_DIGEST(self.sessions[policy_session]["digest"])

    def create(self, parent_handle, in_sensitive, in_public, **kwargs):
        self._enter("create")
        parent = self.objects.get(parent_handle)
        if parent is None or parent["kind"] != "primary":
            raise TSS2_Exception(TPM2_RC.HANDLE)

        key = ec.generate_private_key(ec.SECP256R1())
        numbers = key.public_key().public_numbers()
        public = signing_key_template(
            bytes(in_public.publicArea.authPolicy),
            (numbers.x.to_bytes(32, "big"), numbers.y.to_bytes(32, "big")),
        )
        blob = self.tpm.seed + os.urandom(32)
        self.tpm.wrapped[blob] = key
        return TPM2B_PRIVATE(blob), public, None, None, None

    def load(self, parent_handle, in_private, in_public, **kwargs):
        self._enter("load")
        if parent_handle not in self.objects:
            raise TSS2_Exception(TPM2_RC.HANDLE)
        key = self.tpm.wrapped.get(bytes(in_private))
        if key is None:
            raise TSS2_Exception(TPM2_RC.INTEGRITY)
        numbers = key.public_key().public_numbers()
        if int.from_bytes(bytes(in_public.publicArea.unique.ecc.x), "big") != numbers.x:
            raise TSS2_Exception(TPM2_RC.INTEGRITY)
        handle = next(self._handles)
        self.objects[handle] = {"kind": "key", "public": in_public, "key": key}
        return handle

    def read_public(self, object_handle, **kwargs):
        self._enter("read_public")
        obj = self.objects.get(object_handle)
        if obj is None:
            raise TSS2_Exception(TPM2_RC.HANDLE)
        return obj["public"], None, None

    def sign(self, key_handle, digest, in_scheme, validation, session1=None, **kwargs):
        self._enter("sign")
        obj = self.objects.get(key_handle)
        if obj is None or obj["kind"] != "key":
            raise TSS2_Exception(TPM2_RC.HANDLE)
        session = self.sessions.get(session1)
        if session is None or session["type"] != TPM2_SE.POLICY:
            raise TSS2_Exception(TPM2_RC.POLICY_FAIL)
        if session["digest"] != bytes(obj["public"].publicArea.authPolicy):
            raise TSS2_Exception(TPM2_RC.POLICY_FAIL)
        # A policy session is reset once it has authorized a command
        session["digest"] = bytes(32)

        der = obj["key"].sign(bytes(digest), ec.ECDSA(Prehashed(hashes.SHA256())))
        r, s = decode_dss_signature(der)
        return TPMT_SIGNATURE(
            sigAlg=TPM2_ALG.ECDSA,
            signature=TPMU_SIGNATURE(
                ecdsa=TPMS_SIGNATURE_ECC(
                    hash=TPM2_ALG.SHA256,
                    signatureR=TPM2B_ECC_PARAMETER(r.to_bytes(32, "big")),
                    signatureS=TPM2B_ECC_PARAMETER(s.to_bytes(32, "big")),
                )
            ),
        )

    def flush_context(self, flush_handle):
        self._enter("flush_context")
        if flush_handle in self.objects:
            del self.objects[flush_handle]
        elif flush_handle in self.sessions:
            del self.sessions[flush_handle]
        else:
            raise TSS2_Exception(TPM2_RC.HANDLE)
        self.flushed.append(flush_handle)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_tpm():
    """Fixture for a simulated TPM shared by every connection in a test"""
    return FakeTPM()


@pytest.fixture
def esapi_contexts():
    """Every FakeESAPI opened during the test, in order"""
    return []


@pytest.fixture
def connection_factory(fake_tpm, esapi_contexts):
    """Drop-in for TPMConnection.open backed by the fake TPM"""
    def factory(device="swtpm:fake"):
        esapi = FakeESAPI(fake_tpm, device)
        esapi_contexts.append(esapi)
        return TPMConnection(esapi, device)
    return factory


@pytest.fixture
def connection(connection_factory):
    conn = connection_factory()
    yield conn
    if not conn._closed:
        conn.close()


@pytest.fixture
def default_selection():
    return parse_pcrs("0,2,4")


@pytest.fixture
def config(tmp_path, default_selection):
    return UltraQRConfig(
        device="swtpm:fake",
        key_prefix=str(tmp_path / "keys" / "testprefix"),
        pcrs=default_selection,
    )
