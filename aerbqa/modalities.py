# aerbqa/modalities.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from aerbqa import geometry, kvp_timing, leakage, output
from aerbqa.results import TestResult, incomplete_result

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TestSpec:
    __test__ = False

    key: str
    title: str
    evaluator: Callable[..., TestResult]
    options: Dict[str, Any] = field(default_factory=dict)
    # several tests can read the same stored record (kVp + total filtration)
    document: Optional[str] = None

    @property
    def document_key(self) -> str:
        return self.document or self.key

    @property
    def api_path(self) -> str:
        return _kebab(self.document_key)

    def run(self, doc: Mapping) -> TestResult:
        return self.evaluator(doc, key=self.key, title=self.title, **self.options)


@dataclass(frozen=True)
class Modality:
    name: str
    nomenclature: str
    slug: str
    tests: Tuple[TestSpec, ...]
    aliases: Tuple[str, ...] = ()

    @property
    def document_keys(self) -> List[str]:
        seen: List[str] = []
        for t in self.tests:
            if t.document_key not in seen:
                seen.append(t.document_key)
        return seen


def _kebab(s: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "-", s).lower()


def _norm(s: str) -> str:
    return re.sub(r"[^a-z0-9]", "", str(s).lower())


# =============================================================================
# Test catalogue
# =============================================================================
def _kvp(default_value: float = 5.0, **kw) -> TestSpec:
    return TestSpec(
        "accuracyOfOperatingPotential",
        "Accuracy of Operating Potential (kVp Accuracy)",
        kvp_timing.accuracy_of_operating_potential,
        {"default_value": default_value, **kw},
    )


KVP_AND_TIME = TestSpec(
    "accuracyOfOperatingPotentialAndTime",
    "Accuracy of Operating Potential and Irradiation Time",
    kvp_timing.accuracy_of_operating_potential_and_time,
)
# BMD prints kVp and time as separate summary parameters off one record
BMD_KVP = TestSpec(
    "accuracyOfOperatingPotential",
    "Accuracy of Operating Potential (kVp Accuracy)",
    kvp_timing.accuracy_of_operating_potential_and_time,
    {"part": "kvp", "kvp_percent": True},
    document="accuracyOfOperatingPotentialAndTime",
)
BMD_TIME = TestSpec(
    "accuracyOfIrradiationTime",
    "Accuracy of Irradiation Time",
    kvp_timing.accuracy_of_operating_potential_and_time,
    {"part": "time"},
    document="accuracyOfOperatingPotentialAndTime",
)
TOTAL_FILTRATION = TestSpec(
    "totalFiltration",
    "Total Filtration",
    kvp_timing.total_filtration,
    document="accuracyOfOperatingPotential",
)
IRRADIATION_TIME = TestSpec(
    "accuracyOfIrradiationTime",
    "Accuracy of Irradiation Time",
    kvp_timing.accuracy_of_irradiation_time,
)
TIMER_ACCURACY = TestSpec("timerAccuracy", "Timer Accuracy", kvp_timing.accuracy_of_irradiation_time)
TIMER_TEST = TestSpec("timerTest", "Accuracy of Irradiation Time", kvp_timing.accuracy_of_irradiation_time)

REPRODUCIBILITY = TestSpec(
    "reproducibilityOfRadiationOutput",
    "Reproducibility of Radiation Output (COV)",
    output.reproducibility_of_output,
    {"percent": True},
)
OUTPUT_CONSISTENCY = TestSpec(
    "outputConsistency",
    "Consistency of Radiation Output (COV)",
    output.reproducibility_of_output,
    {"percent": False},
)
LINEARITY_MAS = TestSpec(
    "linearityOfMasLoading",
    "Linearity of mAs Loading (Coefficient of Linearity)",
    output.linearity,
    {"loading": "mAs"},
)
LINEARITY_MA = TestSpec(
    "linearityOfMaLoading",
    "Linearity of mA Loading (Coefficient of Linearity)",
    output.linearity,
    {"loading": "mA"},
)
LINEARITY_MA_CT = TestSpec(
    "linearityOfMaLoading",
    "Linearity of mA Loading (Coefficient of Linearity)",
    output.linearity,
    {"loading": "mA", "check_cells": True},
)
LINEARITY_TIME = TestSpec(
    "linearityOfTime",
    "Linearity of Time (Coefficient of Linearity)",
    output.linearity,
    {"loading": "time"},
)
# OBI records mA stations at a fixed exposure time
LINEARITY_TIME_MA = TestSpec(
    "linearityOfTime",
    "Linearity of Time (Coefficient of Linearity)",
    output.linearity,
    {"loading": "mA"},
)
CTDI = TestSpec("measurementOfCTDI", "Measurement of CTDI", output.ctdi)

TUBE_LEAKAGE = TestSpec(
    "tubeHousingLeakage",
    "Radiation Leakage Level from X-Ray Tube Housing",
    leakage.tube_housing_leakage,
)
TUBE_LEAKAGE_100MA = TestSpec(
    "tubeHousingLeakage",
    "Radiation Leakage Level from X-Ray Tube Housing",
    leakage.tube_housing_leakage,
    {"fixed_ma": 100.0},
)
RADIATION_LEAKAGE_LEVEL = TestSpec(
    "radiationLeakageLevel",
    "Radiation Leakage Level",
    leakage.tube_housing_leakage,
)
PROTECTION_SURVEY = TestSpec(
    "radiationProtectionSurvey",
    "Radiation Protection Survey",
    leakage.radiation_protection_survey,
)
MAX_RADIATION_LEVEL = TestSpec("maxRadiationLevel", "Maximum Radiation Level", leakage.max_radiation_level)
LEAD_APRON = TestSpec("leadApron", "Lead Apron Attenuation", leakage.lead_apron)

PROFILE_WIDTH = TestSpec(
    "radiationProfileWidth",
    "Radiation Profile Width / Slice Thickness",
    geometry.radiation_profile_width,
)
TABLE_GANTRY_ALIGNMENT = TestSpec(
    "alignmentOfTableGantry",
    "Alignment of Table/Gantry",
    geometry.signed_alignment,
    {"default_value": 5.0, "unit": "mm"},
)
GANTRY_TILT = TestSpec(
    "gantryTilt",
    "Gantry Tilt",
    geometry.signed_alignment,
    {"default_value": 2.0, "unit": "°"},
)
CENTRAL_BEAM = TestSpec("centralBeamAlignment", "Central Beam Alignment", geometry.central_beam_alignment)
TABLE_POSITION = TestSpec("tablePosition", "Table Position", geometry.table_position)
ALIGNMENT_CHECKLIST = TestSpec("alignmentTest", "Alignment Test", geometry.alignment_checklist)
CONGRUENCE = TestSpec("congruence", "Congruence of Radiation & Optical Field", geometry.congruence)
CONGRUENCE_OF_RADIATION = TestSpec("congruenceOfRadiation", "Congruence of Radiation", geometry.congruence)
FOCAL_SPOT = TestSpec("effectiveFocalSpot", "Effective Focal Spot Measurement", geometry.effective_focal_spot)
HIGH_CONTRAST = TestSpec("highContrastResolution", "High Contrast Resolution", geometry.high_contrast_resolution)
LOW_CONTRAST = TestSpec("lowContrastResolution", "Low Contrast Resolution", geometry.low_contrast_resolution)
EXPOSURE_RATE = TestSpec("exposureRateTableTop", "Exposure Rate at Table Top", geometry.exposure_rate_table_top)
IMAGING_PHANTOM = TestSpec("imagingPhantom", "Imaging Performance (Phantom)", geometry.imaging_phantom)
EQUIPMENT_SETTING = TestSpec("equipmentSetting", "Equipment Settings Verification", geometry.equipment_setting)


MODALITIES: Tuple[Modality, ...] = (
    Modality(
        "BMD",
        "BMD/DEXA",
        "bmd",
        (BMD_KVP, BMD_TIME, REPRODUCIBILITY, LINEARITY_MA, TUBE_LEAKAGE, PROTECTION_SURVEY, MAX_RADIATION_LEVEL),
        aliases=("DEXA", "Bone Densitometer"),
    ),
    Modality(
        "Radiography Fixed",
        "Radiography (Fixed)",
        "radiography-fixed",
        (
            _kvp(default_value=2.0),
            TOTAL_FILTRATION,
            IRRADIATION_TIME,
            CONGRUENCE,
            CENTRAL_BEAM,
            FOCAL_SPOT,
            LINEARITY_MAS,
            OUTPUT_CONSISTENCY,
            TUBE_LEAKAGE,
            PROTECTION_SURVEY,
        ),
    ),
    Modality(
        "Radiography Mobile",
        "Radiography (Mobile)",
        "radiography-mobile",
        (
            _kvp(default_value=2.0),
            TOTAL_FILTRATION,
            IRRADIATION_TIME,
            CONGRUENCE,
            CENTRAL_BEAM,
            LINEARITY_MAS,
            OUTPUT_CONSISTENCY,
            TUBE_LEAKAGE,
        ),
    ),
    Modality(
        "Radiography Mobile HT",
        "Radiography (Mobile) with HT",
        "radiography-mobile-ht",
        (
            IRRADIATION_TIME,
            _kvp(percent=True),
            TOTAL_FILTRATION,
            CENTRAL_BEAM,
            CONGRUENCE,
            FOCAL_SPOT,
            LINEARITY_MAS,
            OUTPUT_CONSISTENCY,
            RADIATION_LEAKAGE_LEVEL,
            PROTECTION_SURVEY,
        ),
        aliases=("Radiography Mobile with HT", "Mobile HT"),
    ),
    Modality(
        "Radiography Portable",
        "Radiography (Portable)",
        "radiography-portable",
        (
            IRRADIATION_TIME,
            _kvp(percent=True),
            CENTRAL_BEAM,
            CONGRUENCE,
            FOCAL_SPOT,
            LINEARITY_MAS,
            OUTPUT_CONSISTENCY,
            RADIATION_LEAKAGE_LEVEL,
        ),
        aliases=("Portable Radiography",),
    ),
    Modality(
        "Dental Intra",
        "Dental (Intra-oral)",
        "dental-intra",
        (KVP_AND_TIME, REPRODUCIBILITY, LINEARITY_TIME, TUBE_LEAKAGE, PROTECTION_SURVEY),
        aliases=("Intra Oral", "Dental Intra-oral"),
    ),
    Modality(
        "Dental Hand-held",
        "Dental (Hand-held)",
        "dental-hand-held",
        (_kvp(), LINEARITY_MA, LINEARITY_TIME, TUBE_LEAKAGE_100MA),
        aliases=("Dental Handheld",),
    ),
    Modality(
        "Dental CBCT",
        "Dental Cone Beam CT",
        "dental-cbct",
        (_kvp(), IRRADIATION_TIME, LINEARITY_MAS, REPRODUCIBILITY, TUBE_LEAKAGE, PROTECTION_SURVEY),
        aliases=("Dental Cone Beam CT", "CBCT"),
    ),
    Modality(
        "OPG",
        "OPG",
        "opg",
        (_kvp(), TOTAL_FILTRATION, IRRADIATION_TIME, LINEARITY_MAS, OUTPUT_CONSISTENCY, TUBE_LEAKAGE, PROTECTION_SURVEY),
        aliases=("Orthopantomogram",),
    ),
    Modality(
        "Mammography",
        "Mammography",
        "mammography",
        (
            _kvp(),
            LINEARITY_MAS,
            TOTAL_FILTRATION,
            REPRODUCIBILITY,
            TUBE_LEAKAGE,
            IMAGING_PHANTOM,
            PROTECTION_SURVEY,
            EQUIPMENT_SETTING,
            MAX_RADIATION_LEVEL,
        ),
    ),
    Modality(
        "CT Scan",
        "CT Scan",
        "ct-scan",
        (
            PROFILE_WIDTH,
            TABLE_GANTRY_ALIGNMENT,
            GANTRY_TILT,
            TABLE_POSITION,
            _kvp(),
            TOTAL_FILTRATION,
            TIMER_ACCURACY,
            CTDI,
            LINEARITY_MA_CT,
            OUTPUT_CONSISTENCY,
            LOW_CONTRAST,
            HIGH_CONTRAST,
            TUBE_LEAKAGE,
            PROTECTION_SURVEY,
        ),
        aliases=("CT", "Computed Tomography"),
    ),
    Modality(
        "C-Arm",
        "C-Arm",
        "c-arm",
        (_kvp(), EXPOSURE_RATE, HIGH_CONTRAST, LOW_CONTRAST, TUBE_LEAKAGE_100MA),
    ),
    Modality(
        "O-Arm",
        "O-Arm",
        "o-arm",
        (EXPOSURE_RATE, OUTPUT_CONSISTENCY, TUBE_LEAKAGE_100MA),
    ),
    Modality(
        "Fixed Radio-Fluoro",
        "Fixed Radiography & Fluoroscopy",
        "fixed-radio-fluoro",
        (
            _kvp(),
            TOTAL_FILTRATION,
            CENTRAL_BEAM,
            FOCAL_SPOT,
            EXPOSURE_RATE,
            HIGH_CONTRAST,
            LOW_CONTRAST,
            LINEARITY_MAS,
            OUTPUT_CONSISTENCY,
            TUBE_LEAKAGE,
            PROTECTION_SURVEY,
        ),
        aliases=("Radio Fluoro", "Fixed Radio Fluro", "RF"),
    ),
    Modality(
        "Interventional Radiology",
        "Interventional Radiology",
        "interventional-radiology",
        (
            IRRADIATION_TIME,
            CENTRAL_BEAM,
            FOCAL_SPOT,
            EXPOSURE_RATE,
            LINEARITY_MAS,
            OUTPUT_CONSISTENCY,
            LOW_CONTRAST,
            TUBE_LEAKAGE,
            PROTECTION_SURVEY,
        ),
        aliases=("Cath Lab", "IR"),
    ),
    Modality(
        "OBI",
        "On-Board Imager",
        "obi",
        (
            _kvp(default_value=2.0, percent=True),
            TOTAL_FILTRATION,
            TIMER_TEST,
            OUTPUT_CONSISTENCY,
            CENTRAL_BEAM,
            CONGRUENCE_OF_RADIATION,
            FOCAL_SPOT,
            LINEARITY_MAS,
            LINEARITY_TIME_MA,
            TUBE_LEAKAGE,
            HIGH_CONTRAST,
            LOW_CONTRAST,
            ALIGNMENT_CHECKLIST,
        ),
        aliases=("On Board Imager",),
    ),
    Modality("Lead Apron", "Lead Apron", "lead-apron", (LEAD_APRON,)),
)


def _index() -> Dict[str, Modality]:
    out: Dict[str, Modality] = {}
    for m in MODALITIES:
        for label in (m.name, m.nomenclature, m.slug) + tuple(m.aliases):
            out.setdefault(_norm(label), m)
    return out


_BY_NAME = _index()


def modality_names() -> List[str]:
    return [m.name for m in MODALITIES]


def get_modality(name: str) -> Modality:
    m = _BY_NAME.get(_norm(name or ""))
    if m is None:
        raise KeyError(f"Unknown modality '{name}'. Known: {modality_names()}")
    return m


# =============================================================================
# Evaluation
# =============================================================================
def _is_empty(doc: Any) -> bool:
    if doc is None:
        return True
    if isinstance(doc, Mapping):
        return len(doc) == 0
    return True


def evaluate_report(modality: str | Modality, documents: Mapping[str, Any]) -> List[TestResult]:
    """
    Run every registered test whose stored record is present.

    Missing or empty records are skipped. A record the evaluator rejects
    is logged and kept as an incomplete result so the rest of the report
    still renders.
    """
    mod = modality if isinstance(modality, Modality) else get_modality(modality)
    documents = documents or {}

    results: List[TestResult] = []
    for spec in mod.tests:
        doc = documents.get(spec.document_key)
        if _is_empty(doc):
            continue
        try:
            res = spec.run(doc)
        except (ValueError, TypeError) as e:
            logger.warning("%s: %s could not be evaluated: %s", mod.name, spec.key, e)
            results.append(incomplete_result(spec.key, spec.title, str(e)))
            continue

        if res.rows.empty and not res.summary:
            logger.debug("%s: %s has no usable rows", mod.name, spec.key)
            continue
        results.append(res)

    logger.info("%s: evaluated %d of %d tests", mod.name, len(results), len(mod.tests))
    return results
