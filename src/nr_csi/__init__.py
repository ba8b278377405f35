"""
5G NR CSI Feedback Engine

Channel state information selection for downlink link-level simulation
per 3GPP TS 38.214:
- Type-1 single-panel and multi-panel codebook generation
- PMI selection (wideband, subband and PRG granularity)
- RI selection with rank restriction and switching margin
- CQI selection with wideband and differential subband reporting
- PRG-bundled precoding from a reported PMI
- REST service for simulator integration

References:
- 3GPP TS 38.214: Physical layer procedures for data
- 3GPP TS 38.211: Physical channels and modulation
"""

__version__ = "0.1.0"
__author__ = "NR Link-Level Simulation Team"

from .config import (
    CarrierConfig,
    CSIRSResource,
    CSIRSConfig,
    CSIReportConfig,
    ValidatedReport,
    CodebookType,
    ReportingMode,
    CDMType,
    ConfigurationError,
    validate_report_config,
)
from .codebook import Codebook, generate_codebook
from .sinr import precoded_sinr, precoded_sinr_batch, codeword_sinr
from .subband import SubbandInfo, partition_subbands
from .pmi import PMISet, PMIInfo, select_pmi
from .ri import select_ri
from .cqi import (
    CQIInfo,
    SINR_TABLES,
    select_cqi,
    select_cqi_siso,
    cqi_from_sinr,
    differential_cqi,
    sinr_table,
)
from .precoding import prg_precode, precoders_from_pmi
from .server import CSIFeedbackService, create_app

__all__ = [
    # Configuration
    "CarrierConfig",
    "CSIRSResource",
    "CSIRSConfig",
    "CSIReportConfig",
    "ValidatedReport",
    "CodebookType",
    "ReportingMode",
    "CDMType",
    "ConfigurationError",
    "validate_report_config",
    # Codebooks and SINR
    "Codebook",
    "generate_codebook",
    "precoded_sinr",
    "precoded_sinr_batch",
    "codeword_sinr",
    # Subbands
    "SubbandInfo",
    "partition_subbands",
    # PMI / RI / CQI
    "PMISet",
    "PMIInfo",
    "select_pmi",
    "select_ri",
    "CQIInfo",
    "SINR_TABLES",
    "select_cqi",
    "select_cqi_siso",
    "cqi_from_sinr",
    "differential_cqi",
    "sinr_table",
    # Precoding
    "prg_precode",
    "precoders_from_pmi",
    # Server
    "CSIFeedbackService",
    "create_app",
]
