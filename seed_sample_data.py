import asyncio
import datetime
import random
import sys

from db import ExerciseRepository, WeightEntryRepository, Clock, utc_now

DEFAULT_EXERCISES = [
    # Chest
    ("Bench Press", "Barbell, flat bench"),
    ("Incline Bench Press", "Barbell, incline bench"),
    ("Dumbbell Bench Press", "Flat bench"),
    ("Chest Fly Machine", None),
    ("Cable Crossover", None),
    ("Push-Ups", None),
    # Back
    ("Lat Pulldown", "Wide grip"),
    ("Seated Cable Row", None),
    ("Bent Over Row", "Barbell"),
    ("Dumbbell Row", "Single arm"),
    ("Pull-Ups", None),
    ("T-Bar Row", None),
    ("Face Pulls", "Cable, rope attachment"),
    # Shoulders
    ("Overhead Press", "Barbell or dumbbell"),
    ("Lateral Raise", "Dumbbells"),
    ("Front Raise", "Dumbbells"),
    ("Rear Delt Fly", "Machine or dumbbells"),
    ("Shoulder Press Machine", None),
    # Arms
    ("Bicep Curl", "Barbell or dumbbells"),
    ("Hammer Curl", "Dumbbells"),
    ("Preacher Curl", None),
    ("Cable Curl", None),
    ("Tricep Pushdown", "Cable, rope or bar"),
    ("Tricep Dip", None),
    ("Overhead Tricep Extension", "Cable or dumbbell"),
    ("Skull Crushers", "EZ bar or dumbbells"),
    # Legs
    ("Squat", "Barbell, back squat"),
    ("Leg Press", None),
    ("Leg Extension", "Machine"),
    ("Leg Curl", "Lying or seated"),
    ("Romanian Deadlift", "Barbell or dumbbells"),
    ("Lunges", "Walking or stationary"),
    ("Calf Raise", "Standing or seated"),
    ("Hip Abductor", "Machine"),
    ("Hip Adductor", "Machine"),
    # Compound
    ("Deadlift", "Conventional or sumo"),
    ("Barbell Row", None),
    # Core
    ("Plank", None),
    ("Cable Crunch", None),
    ("Hanging Leg Raise", None),
    ("Ab Machine", None),
]


async def seed_exercises(repo: ExerciseRepository) -> int:
    """Insert the default exercise library and return how many were added."""
    for name, notes in DEFAULT_EXERCISES:
        await repo.add(name, notes)
    return len(DEFAULT_EXERCISES)


async def generate_sample_weight_entries(
    repo: WeightEntryRepository,
    clock: Clock | None = None,
    base_weight: float = 175.0,
) -> None:
    """Write 15 entries spaced six days apart with a slight downward trend."""
    today = (clock or utc_now)().date()
    for i in range(14, -1, -1):
        day = today - datetime.timedelta(days=i * 6)
        weight = base_weight - (14 - i) * 0.2 + (random.random() * 6 - 3)
        await repo.log(round(weight, 1), day.isoformat())


async def seed(db_path: str = "workout.db", weights: bool = False) -> None:
    exercises = ExerciseRepository(db_path)
    if await exercises.has_exercises():
        print("Database already contains exercises")
    else:
        added = await seed_exercises(exercises)
        print(f"Seeded {added} exercises")
    if weights:
        await generate_sample_weight_entries(WeightEntryRepository(db_path))
        print("Sample weight entries inserted")


if __name__ == "__main__":
    asyncio.run(seed(sys.argv[1] if len(sys.argv) > 1 else "workout.db"))
