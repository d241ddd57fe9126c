from database import engine, Base
import models  # noqa: F401  registers every table on Base.metadata

print("Dropping all tables...")
Base.metadata.drop_all(bind=engine)

print("Creating all tables...")
Base.metadata.create_all(bind=engine)

print("Database reset complete!")
