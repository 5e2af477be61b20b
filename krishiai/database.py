import os
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Text, create_engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./krishiai.db")

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    password_hash = Column(String, nullable=False)
    salt = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    diagnoses = relationship("Diagnosis", back_populates="owner")


class Diagnosis(Base):
    __tablename__ = "diagnoses"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    crop_type = Column(String(100))
    symptoms = Column(String(500))
    image_url = Column(String)
    diagnosis = Column(String(1000))
    severity = Column(String, default="moderate")
    confidence = Column(Float, default=75)
    estimated_cost = Column(String)
    language = Column(String, default="en")
    causes = Column(JSON, default=list)
    treatment = Column(JSON, default=list)
    prevention = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)

    owner = relationship("User", back_populates="diagnoses")
    messages = relationship(
        "ChatMessage",
        back_populates="diagnosis",
        order_by="ChatMessage.id",
        cascade="all, delete-orphan",
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(Integer, primary_key=True, index=True)
    diagnosis_id = Column(Integer, ForeignKey("diagnoses.id"), index=True, nullable=False)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    diagnosis = relationship("Diagnosis", back_populates="messages")


class CropGuide(Base):
    __tablename__ = "crop_guides"
    id = Column(Integer, primary_key=True, index=True)
    crop_name = Column(String, unique=True, index=True, nullable=False)
    overview = Column(Text)
    climate = Column(Text)
    soil_type = Column(Text)
    sowing = Column(Text)
    irrigation = Column(Text)
    fertilizer = Column(Text)
    pests = Column(Text)
    diseases = Column(Text)
    harvesting = Column(Text)
    yield_info = Column("yield", Text)
    video_urls = Column(JSON, default=list)
    image_url = Column(String)
    language = Column(String, default="en")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
