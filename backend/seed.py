import os

from sqlmodel import Session, select

from database import engine, create_db
from models import Patient, User, UserRole, Ward
from repository import SqlRepository
from services.atd import AtdEngine
from services.auth import hash_password

DEMO_WARDS = [
    {"name": "ICU", "bed_count": 4, "label_prefix": "ICU-"},
    {"name": "General", "bed_count": 8, "label_prefix": "G-"},
]

DEMO_PATIENTS = [
    {"name": "Mr. Rao", "age": 67, "gender": "Male", "blood_group": "B+"},
    {"name": "Ms. Ananya Iyer", "age": 34, "gender": "Female", "blood_group": "O+"},
    {"name": "Aarav Mehta", "age": 52, "gender": "Male"},
    {"name": "Kavya Nair", "age": 29, "gender": "Female", "blood_group": "A-"},
]

DEMO_USERS = [
    {
        "name": "Dr. Priya",
        "email": "doctor@wardflow.local",
        "password": "doctor123",
        "role": UserRole.DOCTOR,
        "department": "Medicine",
    },
    {
        "name": "Nurse Riya",
        "email": "nurse@wardflow.local",
        "password": "nurse123",
        "role": UserRole.NURSE,
        "department": "Nursing",
    },
    {
        "name": "Lab Tech Meera",
        "email": "lab@wardflow.local",
        "password": "lab123",
        "role": UserRole.LAB_TECH,
        "department": "Laboratory",
    },
    {
        "name": "Admin Sahana",
        "email": "admin@wardflow.local",
        "password": "admin123",
        "role": UserRole.ADMIN,
        "department": "Operations",
    },
]


def run_seed(seed_patients: bool = False):
    create_db()
    atd = AtdEngine(SqlRepository(engine))

    with Session(engine) as session:
        if session.exec(select(User)).first():
            print("Database already seeded. Skipping.")
            return

        for spec in DEMO_USERS:
            user = User(
                name=spec["name"],
                email=spec["email"],
                password_hash=hash_password(spec["password"]),
                role=spec["role"],
                department=spec["department"],
            )
            session.add(user)
            print(f"Created user: {user.email} ({user.role.value})")
        session.commit()

        existing_wards = {ward.name for ward in session.exec(select(Ward)).all()}

    for spec in DEMO_WARDS:
        if spec["name"] in existing_wards:
            continue
        ward = atd.register_ward(spec["name"], spec["bed_count"], spec["label_prefix"])
        print(f"Created ward: {ward.name} ({spec['bed_count']} beds)")

    if seed_patients:
        with Session(engine) as session:
            for spec in DEMO_PATIENTS:
                patient = Patient(**spec)
                session.add(patient)
                session.commit()
                session.refresh(patient)
                print(f"Created patient: {patient.name} (id={patient.id})")
    else:
        print("No demo patients seeded (clean slate).")

    print("Demo credentials:")
    for spec in DEMO_USERS:
        print(f"  {spec['email']} / {spec['password']}")
    print("Seed complete.")


if __name__ == "__main__":
    run_seed(seed_patients=os.getenv("WARDFLOW_SEED_PATIENTS", "0") == "1")
