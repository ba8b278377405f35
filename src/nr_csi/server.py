"""
NR CSI Feedback REST API Server

Exposes the CSI feedback engine over HTTP for link-level simulators and
external schedulers:
- PMI, RI and CQI selection from a channel estimate
- Subband partitioning of a bandwidth part
- Service statistics and runtime-tunable report defaults

Complex arrays travel as {"real": [...], "imag": [...]} nested lists and
unavailable (NaN) values are returned as JSON null.
"""

import dataclasses
import logging
import time
from typing import Any, Dict, Optional

from flask import Flask, request, jsonify
import numpy as np

from .codebook import generate_codebook
from .config import (
    NOISE_VARIANCE_FLOOR,
    CarrierConfig,
    ConfigurationError,
    CSIReportConfig,
    CSIRSConfig,
)
from .cqi import SINR_TABLES, select_cqi, select_cqi_siso, sinr_table
from .pmi import select_pmi
from .ri import select_ri
from .subband import partition_subbands

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _new_stats() -> Dict[str, Any]:
    return {
        "pmi_requests": 0,
        "ri_requests": 0,
        "cqi_requests": 0,
        "subband_requests": 0,
        "unavailable_reports": 0,
        "errors": 0,
        "rest_requests": 0,
        "start_time": time.time(),
    }


def _to_json(values):
    """numpy array/scalar -> JSON-ready value with NaN as None"""
    arr = np.asarray(values, dtype=float)
    if arr.ndim == 0:
        return None if np.isnan(arr) else float(arr)
    return np.where(np.isnan(arr), None, arr).tolist()


def _update_carrier(carrier: CarrierConfig, updates: Dict[str, Any]) -> CarrierConfig:
    known = {f.name for f in dataclasses.fields(CarrierConfig)}
    unknown = set(updates) - known
    if unknown:
        raise ConfigurationError(f"Unknown carrier fields: {sorted(unknown)}")
    return dataclasses.replace(carrier, **updates)


def _complex_from_json(data) -> np.ndarray:
    """Rebuild a complex array from {"real", "imag"} (or a plain real list)"""
    if isinstance(data, dict):
        real = np.asarray(data["real"], dtype=float)
        imag = np.asarray(data.get("imag", np.zeros_like(real)), dtype=float)
        if real.shape != imag.shape:
            raise ConfigurationError(
                f"Channel real part {real.shape} and imaginary part {imag.shape} differ"
            )
        return real + 1j * imag
    return np.asarray(data, dtype=complex)


class CSIFeedbackService:
    """
    CSI feedback service

    Holds the carrier and the default report fields applied to every
    request; per-request "carrier" and "report" objects override them.
    """

    def __init__(
        self,
        carrier: Optional[CarrierConfig] = None,
        report_defaults: Optional[Dict[str, Any]] = None,
        table_name: str = "default",
    ):
        self.carrier = carrier or CarrierConfig()
        self.report_defaults: Dict[str, Any] = dict(report_defaults or {})
        sinr_table(table_name)
        self.table_name = table_name
        self.stats = _new_stats()

        logger.info(
            f"CSIFeedbackService initialized (NSizeGrid={self.carrier.n_size_grid}, "
            f"SINR table '{table_name}')"
        )

    # =========================================================================
    # Request parsing
    # =========================================================================

    def _carrier(self, data: Dict[str, Any]) -> CarrierConfig:
        if "carrier" not in data:
            return self.carrier
        return _update_carrier(self.carrier, data["carrier"])

    def _report(self, data: Dict[str, Any], carrier: CarrierConfig) -> CSIReportConfig:
        fields = {
            "n_size_bwp": carrier.n_size_grid,
            "n_start_bwp": carrier.n_start_grid,
            **self.report_defaults,
            **data.get("report", {}),
        }
        return CSIReportConfig.from_dict(fields)

    def _inputs(self, data: Dict[str, Any]):
        carrier = self._carrier(data)
        report = self._report(data, carrier)
        csirs = CSIRSConfig.from_dict(data["csirs"])
        H = _complex_from_json(data["channel"])
        nvar = data.get("noise_variance", NOISE_VARIANCE_FLOOR)
        return carrier, csirs, report, H, nvar

    def _error(self, operation: str, e: Exception) -> Dict[str, Any]:
        self.stats["errors"] += 1
        logger.error(f"Error processing {operation} request: {e}")
        return {
            "status": "error",
            "error": str(e),
            "error_type": type(e).__name__,
        }

    # =========================================================================
    # Operations
    # =========================================================================

    def process_pmi_request(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Select the PMI for a given number of layers

        Expected format:
        {
            "csirs": {"resources": [{"indices": [[k, l, port], ...],
                                     "num_ports": 4, "cdm_type": "noCDM"}]},
            "report": {"n_size_bwp": 52, "n_start_bwp": 0,
                       "panel_dimensions": [2, 1], "pmi_mode": "Subband",
                       "subband_size": 4},
            "num_layers": 1,
            "channel": {"real": [...], "imag": [...]},  # K x L x Rx x ports
            "noise_variance": 0.01
        }
        """
        self.stats["pmi_requests"] += 1

        try:
            carrier, csirs, report, H, nvar = self._inputs(data)
            pmi_set, info = select_pmi(
                carrier, csirs, report, int(data.get("num_layers", 1)), H, nvar
            )
            if not pmi_set.is_valid:
                self.stats["unavailable_reports"] += 1

            response = {
                "status": "success",
                "pmi": pmi_set.to_dict(),
                "subbands": info.subband_info.to_dict(),
            }
            if data.get("include_sinr", False):
                # Per-layer SINR of the reported precoder in each subband
                sinr = np.full((pmi_set.num_subbands, info.num_layers), np.nan)
                for sb in range(pmi_set.num_subbands):
                    indices = pmi_set.indices(sb)
                    if indices is not None:
                        sinr[sb] = info.layer_sinr_per_subband(sb, indices)
                response["sinr_per_subband"] = _to_json(sinr)

            logger.info(f"PMI selected: i1={response['pmi']['i1']} i2={response['pmi']['i2']}")
            return response

        except Exception as e:
            return self._error("PMI", e)

    def process_ri_request(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Select the rank indicator (same request format as PMI, no num_layers)"""
        self.stats["ri_requests"] += 1

        try:
            carrier, csirs, report, H, nvar = self._inputs(data)
            ri, pmi_set = select_ri(carrier, csirs, report, H, nvar)
            if np.isnan(ri):
                self.stats["unavailable_reports"] += 1

            logger.info(f"RI selected: {ri}")
            return {
                "status": "success",
                "ri": None if np.isnan(ri) else int(ri),
                "pmi": pmi_set.to_dict(),
            }

        except Exception as e:
            return self._error("RI", e)

    def process_cqi_request(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Select the CQI

        Same format as the PMI request plus an optional "sinr_table" (a
        table name or a list of dB values). Single-port requests may send
        "csirs_indices" ([[k, l], ...]) in place of "csirs".
        """
        self.stats["cqi_requests"] += 1

        try:
            table = data.get("sinr_table", self.table_name)
            carrier = self._carrier(data)
            report = self._report(data, carrier)
            H = _complex_from_json(data["channel"])
            nvar = data.get("noise_variance", NOISE_VARIANCE_FLOOR)

            if "csirs" in data:
                csirs = CSIRSConfig.from_dict(data["csirs"])
                cqi, pmi_set, cqi_info, _ = select_cqi(
                    carrier, csirs, report, int(data.get("num_layers", 1)), H, nvar, table
                )
            else:
                cqi, pmi_set, cqi_info, _ = select_cqi_siso(
                    carrier, report, np.asarray(data["csirs_indices"]), H, nvar, table
                )
            if np.all(np.isnan(cqi)):
                self.stats["unavailable_reports"] += 1

            logger.info(f"CQI selected: wideband {_to_json(cqi[0])}")
            return {
                "status": "success",
                "cqi": _to_json(cqi),
                "pmi": pmi_set.to_dict(),
                "cqi_info": cqi_info.to_dict(),
            }

        except Exception as e:
            return self._error("CQI", e)

    def process_subband_request(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Partition a BWP into subbands

        Expected format:
        {"mode": "Subband", "bwp_start": 0, "bwp_size": 52, "granularity": 4}
        """
        self.stats["subband_requests"] += 1

        try:
            info = partition_subbands(
                data.get("mode", "Wideband"),
                int(data["bwp_start"]),
                int(data["bwp_size"]),
                data.get("granularity"),
                bool(data.get("ignore_bwp_size", False)),
            )
            return {"status": "success", "subbands": info.to_dict()}

        except Exception as e:
            return self._error("subband", e)

    def get_statistics(self) -> Dict[str, Any]:
        """Get service statistics"""
        uptime = time.time() - self.stats["start_time"]
        handled = sum(
            self.stats[k] for k in ("pmi_requests", "ri_requests", "cqi_requests")
        )

        return {
            **self.stats,
            "uptime_seconds": uptime,
            "requests_per_second": handled / uptime if uptime > 0 else 0,
            "codebook_cache": generate_codebook.cache_info()._asdict(),
        }

    def get_config(self) -> Dict[str, Any]:
        return {
            "carrier": dataclasses.asdict(self.carrier),
            "report_defaults": self.report_defaults,
            "sinr_table": self.table_name,
            "available_sinr_tables": sorted(SINR_TABLES),
        }

    def update_config(self, updates: Dict[str, Any]):
        """Apply runtime configuration updates (validated before any change)"""
        carrier = self.carrier
        if "carrier" in updates:
            carrier = _update_carrier(carrier, updates["carrier"])
        table_name = updates.get("sinr_table", self.table_name)
        sinr_table(table_name)

        self.carrier = carrier
        self.table_name = table_name
        if "report_defaults" in updates:
            self.report_defaults.update(updates["report_defaults"])
        logger.info(f"Configuration updated: {sorted(updates)}")

    def reset(self):
        self.stats = _new_stats()


# Flask application
app = Flask(__name__)
service: Optional[CSIFeedbackService] = None


def get_service() -> CSIFeedbackService:
    """Get or create the service instance"""
    global service
    if service is None:
        service = CSIFeedbackService()
    return service


def _respond(result: Dict[str, Any]):
    if result["status"] == "success":
        status_code = 200
    elif result.get("error_type") in ("ConfigurationError", "KeyError", "ValueError"):
        status_code = 400
    else:
        status_code = 500
    return jsonify(result), status_code


@app.route('/health', methods=['GET'])
def health():
    """Health check endpoint"""
    return jsonify({
        "status": "healthy",
        "service": "nr-csi-feedback",
        "version": "0.1.0",
    })


@app.route('/csi/pmi', methods=['POST'])
def csi_pmi():
    """PMI selection endpoint"""
    if not request.is_json:
        return jsonify({"status": "error", "error": "JSON required"}), 400

    get_service().stats["rest_requests"] += 1
    return _respond(get_service().process_pmi_request(request.get_json()))


@app.route('/csi/ri', methods=['POST'])
def csi_ri():
    """RI selection endpoint"""
    if not request.is_json:
        return jsonify({"status": "error", "error": "JSON required"}), 400

    get_service().stats["rest_requests"] += 1
    return _respond(get_service().process_ri_request(request.get_json()))


@app.route('/csi/cqi', methods=['POST'])
def csi_cqi():
    """CQI selection endpoint"""
    if not request.is_json:
        return jsonify({"status": "error", "error": "JSON required"}), 400

    get_service().stats["rest_requests"] += 1
    return _respond(get_service().process_cqi_request(request.get_json()))


@app.route('/csi/subbands', methods=['POST'])
def csi_subbands():
    """Subband partition endpoint"""
    if not request.is_json:
        return jsonify({"status": "error", "error": "JSON required"}), 400

    get_service().stats["rest_requests"] += 1
    return _respond(get_service().process_subband_request(request.get_json()))


@app.route('/statistics', methods=['GET'])
def statistics():
    """Get service statistics"""
    return jsonify(get_service().get_statistics())


@app.route('/config', methods=['GET', 'PUT'])
def config():
    """Get or update service configuration"""
    service_instance = get_service()

    if request.method == 'GET':
        return jsonify(service_instance.get_config())

    if not request.is_json:
        return jsonify({"status": "error", "error": "JSON required"}), 400

    try:
        service_instance.update_config(request.get_json())
    except (ConfigurationError, TypeError) as e:
        return jsonify({"status": "error", "error": str(e)}), 400

    return jsonify({"status": "success", "message": "Configuration updated"})


@app.route('/reset', methods=['POST'])
def reset():
    """Reset service statistics"""
    get_service().reset()
    return jsonify({"status": "success", "message": "Service state reset"})


def create_app(config: Optional[Dict] = None) -> Flask:
    """Create Flask application with optional configuration"""
    global service

    config = config or {}
    carrier = CarrierConfig.from_dict(config.get("carrier", {}))

    service = CSIFeedbackService(
        carrier=carrier,
        report_defaults=config.get("report", {}),
        table_name=config.get("sinr_table", "default"),
    )

    return app
