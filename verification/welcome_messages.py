"""Welcome message catalog shown after a successful verification."""

from __future__ import annotations

import random

WELCOME_MESSAGES: dict[int, str] = {
    1: "boost pressure: stable.",
    2: "compression ratio: approved.",
    3: "timing advanced. ready.",
    4: "wastegate closed. you're in.",
    5: "intercooler efficiency: 100%.",
    6: "vtec kicked in.",
    7: "turbo spooled. hold on.",
    8: "fuel pump primed.",
    9: "launch control: armed.",
    10: "redline approved.",
    11: "the pre-grid is filling up.",
    12: "garage door: opened.",
    13: "you found the dyno sheet.",
    14: "pit crew: +1.",
    15: "grid position secured.",
    16: "paddock access: granted.",
    17: "tech inspection: passed.",
    18: "restricted class: removed.",
    19: "the build list got longer.",
    20: "somebody gets it.",
    21: "not everyone makes it past this point.",
    22: "remember this feeling.",
    23: "you'll wish you screenshot this.",
    24: "2am. garage lights on. you know.",
    25: "the archives remember.",
    26: "we've been expecting you.",
    27: "your progress is safe now.",
    28: "the backup existed all along.",
    29: "deleted but not forgotten.",
    30: "they can't delete this.",
    31: "patience. good things spool slowly.",
    32: "first gear. hold tight.",
    33: "the long game starts now.",
    34: "countdown initiated.",
    35: "logged. archived. remembered.",
    36: "the waiting list is now the access list.",
    37: "you're early. that matters.",
    38: "filed under: cannot be deleted.",
    39: "timestamp recorded.",
    40: "your position is permanent.",
    41: "not everyone gets through.",
    42: "verification: complete. access: pending.",
    43: "clearance level: updated.",
    44: "you made it to the pre-grid.",
    45: "restricted section: authorized.",
    46: "threshold crossed.",
    47: "entered the pit lane.",
    48: "you passed tech inspection.",
    49: "the gate opened for you.",
    50: "access: granted. status: active.",
}


def get_random_welcome_message() -> tuple[int, str]:
    message_id = random.choice(list(WELCOME_MESSAGES))
    return message_id, WELCOME_MESSAGES[message_id]
