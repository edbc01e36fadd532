# db_init.py
from pathlib import Path

from config import BASE_DIR, Config
from models import Base, make_engine
from surface import resolve_font_family


def main():
    # Ensure instance/ exists for SQLite local dev
    if Config.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        (BASE_DIR / "instance").mkdir(parents=True, exist_ok=True)

    # Ensure exports/ exists for PDFs
    Path(Config.EXPORTS_DIR).mkdir(parents=True, exist_ok=True)

    engine = make_engine(Config.SQLALCHEMY_DATABASE_URI, echo=Config.SQLALCHEMY_ECHO)
    Base.metadata.create_all(engine)

    fonts = resolve_font_family()

    print("Database initialized.")
    print(f"DB: {Config.SQLALCHEMY_DATABASE_URI}")
    print(f"Exports dir: {Config.EXPORTS_DIR}")
    print(f"PDF font: {fonts.regular} / {fonts.bold}")


if __name__ == "__main__":
    main()
