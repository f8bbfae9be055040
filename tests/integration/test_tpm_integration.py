# tests/integration/test_tpm_integration.py
"""
Runs the full flows against a real TPM or swtpm.

Start a simulator, for example
    swtpm socket --tpm2 --server type=tcp,port=2321 --ctrl type=tcp,port=2322 \
        --tpmstate dir=/tmp/swtpm --flags not-need-init,startup-clear
and set ULTRAQR_TEST_TCTI=swtpm:port=2321.
"""
import base64
import hashlib
import json
import logging
import os

import pytest
from tpm2_pytss import ESAPI, ESYS_TR, TPM2_ALG, TPML_DIGEST_VALUES, TPMT_HA, TPMU_HA

from ultraqr.errors import PolicyAuthFailed
from ultraqr.helper.config import UltraQRConfig
from ultraqr.helper.payload import PayloadFactory, verify_payload
from ultraqr.tpm.module.ultraqr_service import Mode, UltraQRService
from ultraqr.tpm.policy import parse_pcrs

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TCTI = os.getenv("ULTRAQR_TEST_TCTI")

pytestmark = pytest.mark.skipif(not TCTI, reason="ULTRAQR_TEST_TCTI is not set")

# Resettable debug PCR, so extending it does not disturb the platform
DEBUG_PCR = 16


@pytest.fixture
def config(tmp_path):
    return UltraQRConfig(
        device=TCTI,
        key_prefix=str(tmp_path / "key"),
        pcrs=parse_pcrs(f"0,{DEBUG_PCR}"),
    )


def extend_debug_pcr(data: bytes) -> None:
    esapi = ESAPI(TCTI)
    try:
        digests = TPML_DIGEST_VALUES([
            TPMT_HA(hashAlg=TPM2_ALG.SHA256, digest=TPMU_HA(sha256=hashlib.sha256(data).digest()))
        ])
        esapi.pcr_extend(ESYS_TR.PCR16, digests)
    finally:
        esapi.close()


def test_full_flow(config):
    UltraQRService(config).run(Mode.INIT)

    enrolled = UltraQRService(config).run(Mode.ENROLL)
    public_der = base64.b64decode(enrolled.data)

    verified = UltraQRService(UltraQRConfig(
        device=config.device, key_prefix=config.key_prefix, pcrs=config.pcrs, challenge="hello",
    )).run(Mode.VERIFY)

    data = json.loads(verified.data)
    assert data["c"] == "hello"
    assert verify_payload(PayloadFactory.create_from_dict(data), public_der)


def test_changed_pcr_refuses_signing(config):
    UltraQRService(config).run(Mode.INIT)
    extend_debug_pcr(b"integration test")

    with pytest.raises(PolicyAuthFailed):
        UltraQRService(config).run(Mode.VERIFY)
