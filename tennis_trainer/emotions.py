"""
Emotional Tennis Framework: six on-court emotions placed on the circumplex
(arousal × valence), with the reset routine for each energy band.

Pure lookups over fixed tables; nothing here calls out to a model.
"""
import re
from collections import Counter

EMOTIONS = {
    "disappointment": {
        "name": "Disappointment",
        "name_es": "Decepcion",
        "icon": "😞",
        "color": "#6B7280",
        "arousal": 3,
        "valence": 2,
        "timeline": "Past",
        "ego": "Ego-Threatened",
        "controllability": "Internal + Uncontrollable",
        "danger": "Critical",
        "description": "Low energy withdrawal from challenge",
        "description_es": "Retirada de baja energia del desafio",
        "trigger_phrases": [
            "no puedo", "es imposible", "ya no", "me rindo", "para que",
            "no sirve", "no vale la pena", "siempre pierdo", "nunca gano",
            "i can't", "it's hopeless", "what's the point", "i give up",
        ],
        "reset_action": "Jump, pump your fist, stand tall",
        "reset_action_es": "Salta, levanta el puno, mantente erguido",
    },
    "frustration": {
        "name": "Frustration",
        "name_es": "Frustracion",
        "icon": "😤",
        "color": "#F59E0B",
        "arousal": 6,
        "valence": 3,
        "timeline": "Past/Present",
        "ego": "Task → Ego-Pressured",
        "controllability": "Internal + Controllable",
        "danger": "Moderate",
        "description": "Productive tension seeking solution",
        "description_es": "Tension productiva buscando solucion",
        "trigger_phrases": [
            "otra vez", "joder", "mierda", "vamos", "por que", "como es posible",
            "tengo que", "no puede ser", "venga ya", "pero si lo se hacer",
            "come on", "again", "why", "i know how to do this",
        ],
        "reset_action": "Pick ONE thing to focus on",
        "reset_action_es": "Elige UNA cosa en la que enfocarte",
    },
    "anger": {
        "name": "Anger",
        "name_es": "Rabia",
        "icon": "😠",
        "color": "#EF4444",
        "arousal": 8,
        "valence": 2,
        "timeline": "Past/Present",
        "ego": "Ego-Defensive",
        "controllability": "Internal + Uncontrollable",
        "danger": "Moderate-High",
        "description": "Explosive reaction to perceived injustice",
        "description_es": "Reaccion explosiva a injusticia percibida",
        "trigger_phrases": [
            "es una mierda", "me cago", "hostia", "puta", "injusto",
            "no es justo", "trampa", "esta ciego", "el arbitro",
            "this is bullshit", "unfair", "cheating", "blind ref",
        ],
        "reset_action": "Walk to towel, breathe deep",
        "reset_action_es": "Camina a la toalla, respira profundo",
    },
    "anxiety": {
        "name": "Anxiety",
        "name_es": "Ansiedad",
        "icon": "😰",
        "color": "#8B5CF6",
        "arousal": 7,
        "valence": 3,
        "timeline": "Future",
        "ego": "Ego-Pressured",
        "controllability": "Internal + Uncontrollable",
        "danger": "High",
        "description": "Anticipatory fear of failure",
        "description_es": "Miedo anticipatorio al fracaso",
        "trigger_phrases": [
            "y si pierdo", "que van a pensar", "no puedo fallar",
            "tengo que ganar", "si fallo", "me van a ver", "estoy nervioso",
            "what if", "they're watching", "i have to win", "i'm nervous",
        ],
        "reset_action": "Walk to towel, breathe deep",
        "reset_action_es": "Camina a la toalla, respira profundo",
    },
    "calmness": {
        "name": "Calmness",
        "name_es": "Calma",
        "icon": "😌",
        "color": "#3B82F6",
        "arousal": 4,
        "valence": 7,
        "timeline": "Present",
        "ego": "Task-Focused",
        "controllability": "Internal + Controllable",
        "danger": "Low",
        "description": "Centered presence and clarity",
        "description_es": "Presencia centrada y claridad",
        "trigger_phrases": [
            "tranquilo", "respira", "uno a uno", "punto a punto",
            "esta bien", "sin prisa", "calma", "enfocate",
            "stay calm", "breathe", "one point at a time", "focus",
        ],
        "reset_action": "Stay in the moment, trust it",
        "reset_action_es": "Mantente en el momento, confía",
    },
    "excitement": {
        "name": "Excitement",
        "name_es": "Entusiasmo",
        "icon": "😄",
        "color": "#10B981",
        "arousal": 7,
        "valence": 8,
        "timeline": "Present/Future",
        "ego": "Task-Focused",
        "controllability": "Internal + Controllable",
        "danger": "Low",
        "description": "Energized engagement with challenge",
        "description_es": "Compromiso energizado con el desafio",
        "trigger_phrases": [
            "vamos", "eso es", "grande", "si", "bien", "perfecto",
            "genial", "increible", "a por el", "lo tengo",
            "yes", "let's go", "amazing", "perfect", "i got this",
        ],
        "reset_action": "Stay in the moment, trust it",
        "reset_action_es": "Mantente en el momento, confía",
    },
}

# IZOF: where players report their best tennis
PEAK_ZONE = {
    "arousal_min": 4,
    "arousal_max": 7,
    "valence_min": 5,
    "valence_max": 10,
    "description": "Optimal arousal with positive emotions",
    "target_emotions": ["calmness", "excitement"],
}

KEY_INSIGHTS = {
    "watch_out": {"emotion": "Disappointment", "reason": "It makes you want to give up", "color": "#EF4444"},
    "target_zone": {"emotion": "Calm + Excited", "reason": "This is where you play your best", "color": "#10B981"},
    "act_fast": {"emotion": "Frustration Building", "reason": "You have 2-3 points to reset", "color": "#F59E0B"},
}

RESET_STRATEGIES = {
    "low_energy": {
        "range": [1, 3],
        "label": "Energy Too Low",
        "actions": [
            "Jump up and down, pump your fist",
            "Stand tall with power pose",
            "Say something strong to yourself",
            "Quick feet, stay moving",
            "Deep breath OUT with energy",
        ],
        "actions_es": [
            "Salta, levanta el puno",
            "Mantente erguido con postura de poder",
            "Dite algo fuerte a ti mismo",
            "Pies rapidos, sigue moviendote",
            "Respira profundo HACIA FUERA con energia",
        ],
    },
    "optimal_energy": {
        "range": [4, 7],
        "label": "Optimal Zone",
        "actions": ["Maintain your rhythm", "Stay present focused", "Trust your preparation"],
        "actions_es": ["Mantén tu ritmo", "Permanece enfocado en el presente", "Confía en tu preparación"],
    },
    "high_energy": {
        "range": [8, 10],
        "label": "Energy Too High",
        "actions": [
            "Walk to your towel (take your time)",
            "Diaphragmatic breathing (belly expands)",
            "Tighten muscles, then relax",
            "Soft eyes, drop your shoulders",
            "Deal with the emotion, then let it go",
        ],
        "actions_es": [
            "Camina a tu toalla (tomate tu tiempo)",
            "Respiracion diafragmatica (expande el abdomen)",
            "Tensa los musculos, luego relajalos",
            "Ojos suaves, baja los hombros",
            "Acepta la emocion, luego dejala ir",
        ],
    },
}

TOWEL_RESET = [
    {"step": 1, "text": "Walk slowly to towel", "text_es": "Camina lento a la toalla"},
    {"step": 2, "text": "Wipe face deliberately", "text_es": "Limpia la cara deliberadamente"},
    {"step": 3, "text": "Deep belly breaths", "text_es": "Respiraciones profundas de barriga"},
    {"step": 4, "text": "Let the emotion go", "text_es": "Deja ir la emocion"},
    {"step": 5, "text": "Back to present", "text_es": "Vuelve al presente"},
]

DANGER_LEVELS = ("Critical", "High", "Moderate-High")
CONFIDENCE_PER_MATCH = 30


def _phrase_pattern(phrase: str):
    # Whole phrases only: "si" must not fire inside "siempre"
    return re.compile(r"(?<!\w)" + re.escape(phrase.lower()) + r"(?!\w)")


_TRIGGERS = {
    key: [(phrase, _phrase_pattern(phrase)) for phrase in emotion["trigger_phrases"]]
    for key, emotion in EMOTIONS.items()
}


def _localized(record: dict, field: str, language: str):
    return record[f"{field}_es"] if language == "es" else record[field]


def circumplex_position(arousal: float, valence: float) -> dict:
    """Map 1-10 arousal/valence onto a 0-100 plot, high arousal at the top."""
    return {
        "x": (valence - 1) / 9 * 100,
        "y": 100 - (arousal - 1) / 9 * 100,
    }


def is_in_peak_zone(emotion: dict | None) -> bool:
    if not emotion:
        return False
    return (
        PEAK_ZONE["arousal_min"] <= emotion["arousal"] <= PEAK_ZONE["arousal_max"]
        and emotion["valence"] >= PEAK_ZONE["valence_min"]
    )


def recommended_action(emotion: dict | None, language: str = "es") -> str:
    if not emotion:
        if language == "es":
            return "Mantente presente y enfocado en el siguiente punto"
        return "Stay present and focused on the next point"
    for strategy in RESET_STRATEGIES.values():
        low, high = strategy["range"]
        if low <= emotion["arousal"] <= high:
            return _localized(strategy, "actions", language)[0]
    return emotion["reset_action"]


def statement_text(statement) -> str:
    """Text of a trajectory item, given as a string or as {"text": ...}."""
    if isinstance(statement, dict):
        statement = statement.get("text")
    if statement is None:
        return ""
    return statement if isinstance(statement, str) else str(statement)


def detect_emotions(text: str, language: str = "es") -> dict:
    lowered = statement_text(text).lower()
    detected = []
    for key, emotion in EMOTIONS.items():
        matched = [phrase for phrase, pattern in _TRIGGERS[key] if pattern.search(lowered)]
        if not matched:
            continue
        detected.append({
            "emotion": key,
            "name": _localized(emotion, "name", language),
            "icon": emotion["icon"],
            "color": emotion["color"],
            "confidence": min(len(matched) * CONFIDENCE_PER_MATCH, 100),
            "matched_phrases": matched,
            "arousal": emotion["arousal"],
            "valence": emotion["valence"],
            "danger": emotion["danger"],
            "timeline": emotion["timeline"],
            "reset_action": _localized(emotion, "reset_action", language),
        })

    # Stable sort keeps table order between equal confidences
    detected.sort(key=lambda d: d["confidence"], reverse=True)
    primary = detected[0] if detected else None
    return {
        "detected": detected,
        "primary_emotion": primary,
        "is_in_peak_zone": is_in_peak_zone(primary),
        "recommended_action": recommended_action(primary, language),
    }


def analyze_emotional_trajectory(statements: list, language: str = "es") -> dict:
    trajectory = []
    for index, statement in enumerate(statements):
        text = statement_text(statement)
        trajectory.append({"index": index, "statement": text, **detect_emotions(text, language)})

    primaries = [t["primary_emotion"] for t in trajectory if t["primary_emotion"]]
    counts = Counter(p["emotion"] for p in primaries)

    def _mean(field):
        if not primaries:
            return None
        return round(sum(p[field] for p in primaries) / len(primaries), 1)

    peak = sum(1 for t in trajectory if t["is_in_peak_zone"])
    return {
        "trajectory": trajectory,
        "summary": {
            "dominant_emotion": counts.most_common(1)[0][0] if counts else None,
            "emotion_distribution": dict(counts),
            "average_arousal": _mean("arousal"),
            "average_valence": _mean("valence"),
            "peak_zone_percentage": round(peak / len(trajectory) * 100) if trajectory else 0,
            "danger_moments": sum(1 for p in primaries if p["danger"] in DANGER_LEVELS),
        },
    }


def framework_config() -> dict:
    return {
        "emotions": {
            key: {**emotion, "circumplex": circumplex_position(emotion["arousal"], emotion["valence"])}
            for key, emotion in EMOTIONS.items()
        },
        "peak_zone": PEAK_ZONE,
        "key_insights": KEY_INSIGHTS,
        "reset_strategies": RESET_STRATEGIES,
        "towel_reset": TOWEL_RESET,
    }
