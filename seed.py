"""
Seed script -- populates the record store with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 5 sample customers
  - 8 sample drivers spread around central Amman (6 online, 2 offline)
"""

import asyncio

from ridedispatch.config import settings
from ridedispatch.domain.entities import Coordinates, Customer, Driver, VehicleInfo
from ridedispatch.domain.enums import DriverStatus
from ridedispatch.domain.matching import h3_cell
from ridedispatch.infrastructure.database import create_engine, create_session_factory
from ridedispatch.infrastructure.repositories import (
    CUSTOMERS,
    CustomerRepository,
    DriverRepository,
)
from ridedispatch.infrastructure.sql_store import SqlRecordStore

CUSTOMERS_DATA = [
    {"id": "cust-1", "name": "Lina Haddad", "phone": "+962790000001"},
    {"id": "cust-2", "name": "Omar Khalil", "phone": "+962790000002"},
    {"id": "cust-3", "name": "Rania Saleh", "phone": "+962790000003"},
    {"id": "cust-4", "name": "Yousef Nasser", "phone": "+962790000004"},
    {"id": "cust-5", "name": "Dana Qasem", "phone": "+962790000005"},
]

DRIVERS_DATA = [
    # Downtown / Jabal Amman
    {"id": "drv-1", "name": "Ahmad Odeh", "lat": 31.9539, "lng": 35.9106, "status": DriverStatus.ONLINE,
     "vehicle": ("Toyota", "Corolla", 2020, "White", "10-12345")},
    {"id": "drv-2", "name": "Sami Barakat", "lat": 31.9515, "lng": 35.9239, "status": DriverStatus.ONLINE,
     "vehicle": ("Hyundai", "Elantra", 2021, "Silver", "10-23456")},
    {"id": "drv-3", "name": "Khaled Yasin", "lat": 31.9580, "lng": 35.8950, "status": DriverStatus.ONLINE,
     "vehicle": ("Kia", "Cerato", 2019, "Black", "10-34567")},
    # Abdoun / Sweifieh
    {"id": "drv-4", "name": "Hani Shami", "lat": 31.9425, "lng": 35.8837, "status": DriverStatus.ONLINE,
     "vehicle": ("Mercedes", "E200", 2022, "Black", "20-45678")},
    {"id": "drv-5", "name": "Faris Adwan", "lat": 31.9590, "lng": 35.8620, "status": DriverStatus.ONLINE,
     "vehicle": ("Toyota", "Camry", 2021, "Grey", "20-56789")},
    # Shmeisani / Abdali
    {"id": "drv-6", "name": "Majd Tarawneh", "lat": 31.9740, "lng": 35.9000, "status": DriverStatus.ONLINE,
     "vehicle": ("Nissan", "Sunny", 2018, "Blue", "30-67890")},
    {"id": "drv-7", "name": "Issa Hourani", "lat": 31.9660, "lng": 35.9100, "status": DriverStatus.OFFLINE,
     "vehicle": ("Hyundai", "Accent", 2017, "Red", "30-78901")},
    {"id": "drv-8", "name": "Nabil Zoubi", "lat": 31.9870, "lng": 35.8700, "status": DriverStatus.OFFLINE,
     "vehicle": ("Kia", "K5", 2023, "White", "30-89012")},
]


async def seed(store: SqlRecordStore):
    if await store.query(CUSTOMERS, limit=1):
        print("Database already seeded. Skipping.")
        return

    # ── Customers ─────────────────────────────────────────────────────
    customers = CustomerRepository(store)
    for c in CUSTOMERS_DATA:
        await customers.create(Customer(id=c["id"], name=c["name"], phone=c["phone"]))
    print(f"  Created {len(CUSTOMERS_DATA)} customers")

    # ── Drivers ───────────────────────────────────────────────────────
    drivers = DriverRepository(store)
    for d in DRIVERS_DATA:
        make, model, year, color, plate = d["vehicle"]
        location = Coordinates(d["lat"], d["lng"])
        driver = Driver(
            id=d["id"],
            name=d["name"],
            phone="",
            vehicle=VehicleInfo(make, model, year, color, plate),
            location=location,
            h3_cell=h3_cell(location, settings.h3_resolution),
        )
        driver.set_status(d["status"])
        await drivers.create(driver)
    print(f"  Created {len(DRIVERS_DATA)} drivers")

    print("\nSeed complete!")


async def main():
    print("Seeding database...")
    engine = create_engine(settings.database_url)
    await seed(SqlRecordStore(create_session_factory(engine)))
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
