"""
JSON schemas for lab result payloads submitted by diagnostic centers.

The schema is the contract for what may be stored against a redeemed code:
one entry per test parameter, each with a value, a reference range and a
normal/abnormal/borderline flag.
"""

from app.models.enums import ParameterStatus, values

LAB_PARAMETER_SCHEMA: dict = {
    "type": "object",
    "required": ["parameter", "value", "referenceRange", "status"],
    "properties": {
        "parameter": {
            "type": "string",
            "minLength": 1,
            "description": "Test name, e.g. 'HIV 1&2 Antibody'.",
        },
        "value": {
            "type": "string",
            "minLength": 1,
            "description": "Observed value, e.g. 'Non-Reactive'.",
        },
        "unit": {"type": ["string", "null"]},
        "referenceRange": {
            "type": "string",
            "minLength": 1,
            "description": "Expected value or range, e.g. 'Negative'.",
        },
        "interpretation": {"type": ["string", "null"]},
        "status": {
            "type": "string",
            "enum": list(values(ParameterStatus)),
        },
    },
    "additionalProperties": False,
}


LAB_RESULT_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "PriveScreen lab result",
    "description": "Ordered list of test parameters for one assessment code.",
    "type": "array",
    "minItems": 1,
    "items": LAB_PARAMETER_SCHEMA,
}


# Reference values shown to centers when a parameter is pre-filled.
DEFAULT_REFERENCE_RANGES: dict[str, str] = {
    "HIV 1&2": "Non-Reactive",
    "HIV 1&2 Antibody": "Non-Reactive",
    "Hepatitis B": "Negative",
    "Hepatitis B Surface Antigen": "Negative",
    "Hepatitis C": "Negative",
    "Hepatitis C Antibody": "Negative",
    "Syphilis": "Non-Reactive",
    "Syphilis VDRL": "Non-Reactive",
    "Gonorrhea": "Not Detected",
    "Gonorrhea PCR": "Not Detected",
    "Chlamydia": "Not Detected",
    "Chlamydia PCR": "Not Detected",
}


def default_reference_range(parameter: str) -> str:
    return DEFAULT_REFERENCE_RANGES.get(parameter, "Normal")
