"""
Repair knowledge base and keyword matching.

Rows are scored by how many query terms (description words longer than
three characters plus any image-analysis problem phrases) occur in the
row's text. The highest positive score wins; ties go to the earliest row.
"""
import logging
import re
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from .db_models import RepairRecord

logger = logging.getLogger(__name__)

MIN_TERM_LENGTH = 4

_PUNCTUATION = re.compile(r"^[^\w]+|[^\w]+$")


def query_terms(description: str, extra_terms: Optional[list[str]] = None) -> list[str]:
    """Words of the description longer than three characters, plus extra phrases."""
    words = [_PUNCTUATION.sub("", w) for w in description.lower().split()]
    terms = [w for w in words if len(w) >= MIN_TERM_LENGTH]
    for phrase in extra_terms or []:
        phrase = phrase.lower().strip()
        if len(phrase) >= MIN_TERM_LENGTH:
            terms.append(phrase)
    return terms


def score_text(text: str, terms: list[str]) -> int:
    return sum(1 for term in terms if term in text)


def best_match(records: list[RepairRecord], terms: list[str]) -> tuple[Optional[RepairRecord], int]:
    best, best_score = None, 0
    for record in records:
        score = score_text(record.searchable_text(), terms)
        # strict > keeps the earliest row on ties
        if score > best_score:
            best, best_score = record, score
    return best, best_score


def find_best_record(
    session_factory: sessionmaker,
    category: str,
    description: str,
    extra_terms: Optional[list[str]] = None,
) -> tuple[Optional[RepairRecord], int]:
    terms = query_terms(description, extra_terms)
    if not terms:
        return None, 0
    with session_factory() as db:
        records = db.scalars(
            select(RepairRecord)
            .where(RepairRecord.category == category)
            .order_by(RepairRecord.id)
        ).all()
        record, score = best_match(records, terms)
        if record is not None:
            db.expunge(record)
    return record, score


def record_to_payload(record: RepairRecord) -> dict:
    """Map a knowledge row onto the diagnosis shape with the table's canned defaults."""
    explanation = record.diagnosis or ""
    if record.reason:
        explanation = f"{explanation} {record.reason}".strip()
    if record.tip:
        explanation = f"{explanation} Tip: {record.tip}".strip()
    return {
        "problem": record.symptoms or record.title,
        "explanation": explanation,
        "repairSteps": [s for s in (record.fix_steps or "").split("\n") if s.strip()],
        "toolsNeeded": [t.strip() for t in (record.tools_needed or "").split(",") if t.strip()],
        "estimatedCost": record.estimated_cost or "varies",
        "difficulty": "Intermediate",
        "successRate": "75-85%",
        "timeRequired": "1-3 hours",
        "safetyWarnings": [
            "Disconnect power before repair",
            "Use appropriate safety equipment",
        ],
    }


SEED_RECORDS = [
    {
        "category": "device",
        "title": "Smartphone",
        "symptoms": "Phone not charging, charging port loose, battery drains fast",
        "diagnosis": "Worn or dirty charging port, or a degraded battery",
        "reason": "Lint builds up in the port and battery capacity fades with charge cycles",
        "fix_steps": "Power off the phone\nClean the charging port with a wooden toothpick\nTry a known-good cable and charger\nCheck battery health and replace the battery if below 80%",
        "tools_needed": "Wooden toothpick, Known-good USB cable, Pentalobe screwdriver, Spudger",
        "estimated_cost": "$10-60",
        "tip": "Most 'dead port' repairs are just pocket lint.",
    },
    {
        "category": "device",
        "title": "Laptop",
        "symptoms": "Laptop overheating, fan noise loud, random shutdown under load",
        "diagnosis": "Clogged heatsink or dried thermal paste",
        "reason": "Dust blocks airflow and old paste stops transferring heat",
        "fix_steps": "Shut down and remove the battery\nOpen the bottom cover\nBlow dust out of the fan and heatsink fins\nReplace thermal paste on the CPU and GPU\nReassemble and monitor temperatures",
        "tools_needed": "Phillips screwdriver, Compressed air, Thermal paste, Isopropyl alcohol",
        "estimated_cost": "$10-40",
        "tip": "Hold the fan still while blowing air so it does not over-spin.",
    },
    {
        "category": "device",
        "title": "Television",
        "symptoms": "TV has sound but no picture, backlight flickers",
        "diagnosis": "Failed LED backlight strip or backlight driver",
        "reason": "LED strips run hot and individual LEDs fail open, breaking the series string",
        "fix_steps": "Shine a flashlight at the screen to confirm an image is present\nUnplug the TV and remove the back panel\nTest LED strips with an LED tester\nReplace the failed strip set",
        "tools_needed": "Flashlight, LED tester, Phillips screwdriver, Multimeter",
        "estimated_cost": "$30-120",
        "tip": "Replace all strips together; the rest are close to failing.",
    },
    {
        "category": "instrument",
        "title": "Digital multimeter",
        "symptoms": "Multimeter readings drift, display shows wrong voltage",
        "diagnosis": "Low battery or damaged input fuse",
        "reason": "A weak battery skews the reference and a blown fuse opens the current range",
        "fix_steps": "Replace the meter battery\nCheck the input fuses for continuity\nVerify against a known reference voltage\nRecalibrate if the error persists",
        "tools_needed": "Replacement battery, Replacement fuse, Reference voltage source",
        "estimated_cost": "$5-30",
        "tip": "Always use fuses with the correct breaking capacity rating.",
    },
    {
        "category": "instrument",
        "title": "Oscilloscope",
        "symptoms": "Oscilloscope trace noisy, probe signal distorted",
        "diagnosis": "Probe compensation off or damaged probe ground",
        "reason": "Uncompensated probes ring on edges and a broken ground lead picks up noise",
        "fix_steps": "Connect the probe to the calibration output\nAdjust the probe compensation trimmer for a square edge\nInspect the ground lead and replace if damaged",
        "tools_needed": "Probe adjustment tool, Spare probe",
        "estimated_cost": "$0-80",
        "tip": None,
    },
    {
        "category": "component",
        "title": "Electrolytic capacitor",
        "symptoms": "Capacitor bulging or leaking, device hums or resets",
        "diagnosis": "Failed electrolytic capacitor",
        "reason": "Heat dries the electrolyte, raising ESR until the capacitor stops filtering",
        "fix_steps": "Discharge the capacitor safely\nDesolder the failed capacitor\nInstall a replacement with equal capacitance and equal or higher voltage rating\nObserve polarity",
        "tools_needed": "Soldering iron, Desoldering pump, ESR meter, Replacement capacitor",
        "estimated_cost": "$1-10",
        "tip": "Choose 105C rated parts for hot locations.",
    },
    {
        "category": "component",
        "title": "Voltage regulator",
        "symptoms": "Regulator overheating, output voltage wrong or missing",
        "diagnosis": "Shorted load or failed linear regulator",
        "reason": "Excess load current overheats the regulator until it fails or shuts down",
        "fix_steps": "Measure the regulator input and output voltages\nDisconnect the load and measure again\nCheck the load for shorts\nReplace the regulator",
        "tools_needed": "Multimeter, Soldering iron, Replacement regulator",
        "estimated_cost": "$1-15",
        "tip": None,
    },
    {
        "category": "pcb",
        "title": "Printed circuit board",
        "symptoms": "Burnt trace, board short circuit, no power after spill",
        "diagnosis": "Damaged copper trace or short from corrosion",
        "reason": "Liquid residue corrodes traces and bridges adjacent pads",
        "fix_steps": "Clean the board with isopropyl alcohol and a soft brush\nInspect under magnification for broken traces\nBridge broken traces with jumper wire\nCheck for shorts between power rails",
        "tools_needed": "Isopropyl alcohol, Soft brush, Magnifier, Jumper wire, Soldering iron, Multimeter",
        "estimated_cost": "$5-40",
        "tip": "Let the board dry completely before powering it.",
    },
    {
        "category": "pcb",
        "title": "Solder joints",
        "symptoms": "Intermittent connection, cracked solder joint, works when pressed",
        "diagnosis": "Cold or cracked solder joint",
        "reason": "Thermal cycling fatigues joints on heavy or hot components",
        "fix_steps": "Locate the suspect joint by gently flexing the board\nAdd flux\nReflow the joint with fresh solder",
        "tools_needed": "Soldering iron, Flux, Solder, Magnifier",
        "estimated_cost": "$0-20",
        "tip": None,
    },
    {
        "category": "board",
        "title": "Arduino board",
        "symptoms": "Arduino upload fails, board not detected over USB",
        "diagnosis": "Bootloader or USB-serial problem",
        "reason": "A corrupted bootloader or missing driver prevents the IDE from programming the chip",
        "fix_steps": "Try another USB cable and port\nInstall the USB-serial driver\nSelect the correct board and port\nReburn the bootloader with an ISP programmer",
        "tools_needed": "USB cable, ISP programmer, Computer with Arduino IDE",
        "estimated_cost": "$0-25",
        "tip": "Many cheap cables are charge-only.",
    },
    {
        "category": "board",
        "title": "Raspberry Pi",
        "symptoms": "Raspberry Pi not booting, red power light only, green light not blinking",
        "diagnosis": "Corrupt SD card or insufficient power supply",
        "reason": "Undervoltage and unclean shutdowns corrupt the boot partition",
        "fix_steps": "Use the official power supply\nReflash the SD card\nTry a different SD card\nCheck the boot partition files",
        "tools_needed": "Official power supply, SD card reader, Spare SD card",
        "estimated_cost": "$10-25",
        "tip": None,
    },
]


def seed_knowledge(session_factory: sessionmaker, records: Optional[list[dict]] = None) -> int:
    """Insert seed rows when the table is empty. Returns rows inserted."""
    with session_factory() as db:
        existing = db.scalar(select(func.count()).select_from(RepairRecord))
        if existing:
            return 0
        rows = [RepairRecord(**r) for r in (records if records is not None else SEED_RECORDS)]
        db.add_all(rows)
        db.commit()
    logger.info(f"Seeded repair knowledge base with {len(rows)} records")
    return len(rows)
