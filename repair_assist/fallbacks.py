"""
Guaranteed fallback diagnoses, one canned entry per device category.

This is the terminal pipeline stage: no external dependency, never fails.
"""
from .input_sanitization import DEFAULT_CATEGORY, normalize_category
from .models import DiagnosisResult

GENERAL_SAFETY = [
    "Disconnect power and remove batteries before opening the device",
    "Large capacitors can hold a dangerous charge after unplugging",
    "Stop and consult a professional if you smell burning or see swollen batteries",
]

CANNED_FALLBACKS = {
    "device": {
        "likely_problems": ["Power supply failure", "Component malfunction", "Connection issue"],
        "repairSteps": [
            "Check power connections and the power supply",
            "Inspect the device for visible damage, burn marks or swollen parts",
            "Test with known-good components such as a spare charger or cable",
            "Use a multimeter to check voltages at the power input",
            "Consult the device manual or a professional repair service",
        ],
        "toolsNeeded": ["Basic screwdrivers", "Multimeter", "Flashlight", "Anti-static wrist strap"],
        "estimatedCost": "$50-200 depending on required parts and labor",
        "timeRequired": "2-4 hours",
    },
    "instrument": {
        "likely_problems": ["Calibration error", "Sensor malfunction", "Display issue"],
        "repairSteps": [
            "Replace the batteries or verify the supply voltage",
            "Check fuses and input protection for continuity",
            "Compare readings against a known reference",
            "Inspect sensor leads and connectors for corrosion",
            "Send the instrument for professional calibration if readings stay off",
        ],
        "toolsNeeded": ["Reference source", "Replacement fuses", "Precision screwdrivers", "Contact cleaner"],
        "estimatedCost": "$30-150 depending on calibration and parts",
        "timeRequired": "1-3 hours",
    },
    "component": {
        "likely_problems": ["Component failure", "Overheating", "Physical damage"],
        "repairSteps": [
            "Remove power and let the circuit cool",
            "Inspect the component for cracks, bulging or discoloration",
            "Measure the component out of circuit and compare with its datasheet",
            "Replace it with a part of equal or better rating",
            "Check what caused the failure before powering up again",
        ],
        "toolsNeeded": ["Soldering iron", "Desoldering pump", "Component tester", "Datasheet for the part"],
        "estimatedCost": "$5-50 depending on the part",
        "timeRequired": "1-2 hours",
    },
    "pcb": {
        "likely_problems": ["Trace damage", "Component failure", "Short circuit"],
        "repairSteps": [
            "Clean the board with isopropyl alcohol",
            "Inspect traces and solder joints under magnification",
            "Check for shorts between power rails and ground",
            "Reflow suspect joints and bridge broken traces with jumper wire",
            "Replace damaged components one at a time, testing after each",
        ],
        "toolsNeeded": ["Soldering iron", "Magnifier", "Isopropyl alcohol", "Jumper wire", "Continuity tester"],
        "estimatedCost": "$10-100 depending on damage",
        "timeRequired": "2-5 hours",
    },
    "board": {
        "likely_problems": ["Programming issue", "Power problem", "Communication failure"],
        "repairSteps": [
            "Power the board from a known-good supply and cable",
            "Confirm the board is detected by the computer and drivers are installed",
            "Re-flash the firmware or bootloader",
            "Disconnect attached peripherals and test the bare board",
            "Check the onboard regulator outputs",
        ],
        "toolsNeeded": ["USB cable", "Known-good power supply", "Programmer or flashing tool", "Logic probe"],
        "estimatedCost": "$0-60 depending on replacement parts",
        "timeRequired": "1-3 hours",
    },
}


def guaranteed_fallback(category: str = DEFAULT_CATEGORY) -> DiagnosisResult:
    """Canned diagnosis for the category; unknown categories use 'device'."""
    entry = CANNED_FALLBACKS[normalize_category(category)]
    likely = entry["likely_problems"]
    return DiagnosisResult(
        problem=f"Possible {likely[0].lower()}",
        explanation=(
            "An automated diagnosis could not be completed, so these are the most common "
            f"causes for this kind of {normalize_category(category)}: {', '.join(likely)}. "
            "Work through the steps in order and stop at the first fault you find."
        ),
        repair_steps=list(entry["repairSteps"]),
        tools_needed=list(entry["toolsNeeded"]),
        estimated_cost=entry["estimatedCost"],
        difficulty="Intermediate",
        success_rate="60-70%",
        time_required=entry["timeRequired"],
        safety_warnings=list(GENERAL_SAFETY),
    )
