from __future__ import annotations

REGISTRATION_STEPS = (2, 3)


def encode_horse_pick(race_id: str, horse_id: int) -> str:
    """
    Encode an inline "pick this horse" button.

    Format: horse:{race_id}:{horse_id}
    """

    return f"horse:{race_id}:{horse_id}"


def parse_horse_pick(data: str) -> tuple[str, int]:
    parts = data.split(":")
    if len(parts) != 3 or parts[0] != "horse" or not parts[1]:
        raise ValueError(f"Invalid horse pick callback data: {data}")

    race_id = parts[1]
    horse_id = int(parts[2])
    return race_id, horse_id


def encode_registration_step(step: int, user_id: str) -> str:
    """
    Encode a "next registration step" button.

    Format: reg_step{step}_{user_id}
    """

    if step not in REGISTRATION_STEPS:
        raise ValueError(f"Unknown registration step: {step}")
    return f"reg_step{step}_{user_id}"


def parse_registration_step(data: str) -> tuple[int, str]:
    prefix, sep, user_id = data.partition("_step")[2].partition("_")
    if not data.startswith("reg_step") or not sep or not user_id:
        raise ValueError(f"Invalid registration callback data: {data}")

    step = int(prefix)
    if step not in REGISTRATION_STEPS:
        raise ValueError(f"Unknown registration step: {step}")
    return step, user_id
