# File: src/parkcore/infrastructure/repositories.py
"""
Repository and Unit of Work implementations for the Parking Facility Core

Repositories give the coordinator a collection-like view of spots and
sessions. Every state change goes through a UnitOfWork so that occupying
a spot and opening a session (or closing a session and releasing its
spot) are applied together or not at all.

Storage Implementations:
- InMemory* - For tests, demos and embedding
- SQLAlchemy* - For relational databases (SQLite in the CLI)
"""

from abc import ABC, abstractmethod
from copy import deepcopy
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Callable
import logging
import threading

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean, DateTime, DECIMAL, JSON, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from ..domain.models import (
    Spot, SpotType, SpotStatus, SpotFeature, VehicleType, RateType, SessionStatus,
    LicensePlate, Money, DurationBreakdown, SpotStateConflictError, InvalidInputError,
    AlreadyParkedError,
)
from ..domain.aggregates import ParkingSession


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class SpotInventory(ABC):
    """Collection of parking spots"""

    @abstractmethod
    def get_all(self) -> List[Spot]:
        """Snapshot of every spot; mutating the result changes nothing"""
        pass

    @abstractmethod
    def get(self, spot_id: str) -> Optional[Spot]:
        pass

    @abstractmethod
    def add(self, spot: Spot) -> Spot:
        pass

    @abstractmethod
    def occupy(self, spot_id: str, license_plate: str) -> Spot:
        """Mark an available spot occupied; raises SpotStateConflictError otherwise"""
        pass

    @abstractmethod
    def release(self, spot_id: str, license_plate: str) -> Spot:
        """Free a spot held by the plate; raises SpotStateConflictError otherwise"""
        pass

    @abstractmethod
    def set_status(self, spot_id: str, status: SpotStatus) -> Spot:
        """Take an unoccupied spot in or out of service"""
        pass

    def count(self) -> int:
        return len(self.get_all())


class SessionStore(ABC):
    """Collection of parking sessions"""

    @abstractmethod
    def get(self, session_id: str) -> Optional[ParkingSession]:
        pass

    @abstractmethod
    def find_active(self, license_plate: str) -> Optional[ParkingSession]:
        pass

    @abstractmethod
    def find_all_active(self) -> List[ParkingSession]:
        pass

    @abstractmethod
    def find_completed(self) -> List[ParkingSession]:
        pass

    @abstractmethod
    def add(self, session: ParkingSession) -> ParkingSession:
        pass

    @abstractmethod
    def update(self, session: ParkingSession) -> ParkingSession:
        pass


class UnitOfWork(ABC):
    """
    Unit of Work pattern for transaction management

    Commits on a clean exit and rolls back when the block raises. A block
    that only reads can call discard() to roll back instead of committing.
    """

    def __init__(self):
        self._discard = False
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def spots(self) -> SpotInventory:
        pass

    @property
    @abstractmethod
    def sessions(self) -> SessionStore:
        pass

    @abstractmethod
    def _begin(self) -> None:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    def _end(self) -> None:
        pass

    def discard(self) -> None:
        self._discard = True

    def __enter__(self):
        self._discard = False
        self._begin()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.warning(f"Rolling back unit of work: {exc_val}")
                self.rollback()
            elif self._discard:
                self.rollback()
            else:
                self.commit()
        finally:
            self._end()
        return False


# ============================================================================
# IN-MEMORY IMPLEMENTATIONS
# ============================================================================

class InMemorySpotInventory(SpotInventory):
    """In-memory spot inventory keyed by spot id"""

    def __init__(self, spots: Optional[List[Spot]] = None):
        self._storage: Dict[str, Spot] = {}
        self._logger = logging.getLogger(self.__class__.__name__)
        for spot in spots or ():
            self.add(spot)

    def _require(self, spot_id: str) -> Spot:
        spot = self._storage.get(spot_id)
        if spot is None:
            raise SpotStateConflictError(f"Spot {spot_id} does not exist", spot_id=spot_id)
        return spot

    def get_all(self) -> List[Spot]:
        return [spot.copy() for spot in self._storage.values()]

    def get(self, spot_id: str) -> Optional[Spot]:
        spot = self._storage.get(spot_id)
        return spot.copy() if spot else None

    def add(self, spot: Spot) -> Spot:
        if spot.id in self._storage:
            raise InvalidInputError(f"Spot {spot.id} already exists", spot_id=spot.id)
        self._storage[spot.id] = spot.copy()
        self._logger.debug(f"Added spot {spot.id}")
        return spot

    def occupy(self, spot_id: str, license_plate: str) -> Spot:
        spot = self._require(spot_id)
        spot.occupy(license_plate)
        return spot.copy()

    def release(self, spot_id: str, license_plate: str) -> Spot:
        spot = self._require(spot_id)
        spot.release(license_plate)
        return spot.copy()

    def set_status(self, spot_id: str, status: SpotStatus) -> Spot:
        spot = self._require(spot_id)
        if spot.status == SpotStatus.OCCUPIED or status == SpotStatus.OCCUPIED:
            raise SpotStateConflictError(
                f"Cannot change status of spot {spot_id} through set_status while occupied",
                spot_id=spot_id,
            )
        spot.status = status
        return spot.copy()

    def snapshot(self) -> Dict[str, Spot]:
        return {spot_id: spot.copy() for spot_id, spot in self._storage.items()}

    def restore(self, state: Dict[str, Spot]) -> None:
        self._storage = state


class InMemorySessionStore(SessionStore):
    """In-memory session store keyed by session id"""

    def __init__(self):
        self._storage: Dict[str, ParkingSession] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def get(self, session_id: str) -> Optional[ParkingSession]:
        session = self._storage.get(session_id)
        return deepcopy(session) if session else None

    def find_active(self, license_plate: str) -> Optional[ParkingSession]:
        plate = LicensePlate.of(license_plate)
        for session in self._storage.values():
            if session.is_active and session.license_plate == plate:
                return deepcopy(session)
        return None

    def find_all_active(self) -> List[ParkingSession]:
        return [deepcopy(s) for s in self._storage.values() if s.is_active]

    def find_completed(self) -> List[ParkingSession]:
        return [deepcopy(s) for s in self._storage.values() if not s.is_active]

    def add(self, session: ParkingSession) -> ParkingSession:
        if session.id in self._storage:
            raise InvalidInputError(f"Session {session.id} already exists")
        if self.find_active(str(session.license_plate)) is not None:
            raise AlreadyParkedError(
                f"{session.license_plate} already has an active session",
                license_plate=str(session.license_plate),
            )
        self._storage[session.id] = self._stored_copy(session)
        self._logger.debug(f"Added session {session.id}")
        return session

    def update(self, session: ParkingSession) -> ParkingSession:
        if session.id not in self._storage:
            raise KeyError(f"Session {session.id} not found")
        self._storage[session.id] = self._stored_copy(session)
        self._logger.debug(f"Updated session {session.id}")
        return session

    @staticmethod
    def _stored_copy(session: ParkingSession) -> ParkingSession:
        stored = deepcopy(session)
        stored.clear_events()
        return stored

    def snapshot(self) -> Dict[str, ParkingSession]:
        return dict(self._storage)

    def restore(self, state: Dict[str, ParkingSession]) -> None:
        self._storage = state


class InMemoryUnitOfWork(UnitOfWork):
    """
    Unit of Work over in-memory stores

    Holds a lock for the whole block so concurrent writers are serialized,
    and restores the state captured on entry when rolled back.
    """

    def __init__(self, spots: InMemorySpotInventory, sessions: InMemorySessionStore,
                 lock: Optional[threading.RLock] = None):
        super().__init__()
        self._spots = spots
        self._sessions = sessions
        self._lock = lock or threading.RLock()
        self._saved = None

    @property
    def spots(self) -> InMemorySpotInventory:
        return self._spots

    @property
    def sessions(self) -> InMemorySessionStore:
        return self._sessions

    def _begin(self) -> None:
        self._lock.acquire()
        self._saved = (self._spots.snapshot(), self._sessions.snapshot())

    def commit(self) -> None:
        self._saved = None

    def rollback(self) -> None:
        if self._saved is not None:
            spots, sessions = self._saved
            self._spots.restore({k: v.copy() for k, v in spots.items()})
            self._sessions.restore(dict(sessions))

    def _end(self) -> None:
        self._saved = None
        self._lock.release()


class InMemoryStorage:
    """Pairs an inventory and a session store and hands out units of work"""

    def __init__(self, spots: Optional[List[Spot]] = None):
        self.spots = InMemorySpotInventory(spots)
        self.sessions = InMemorySessionStore()
        self._lock = threading.RLock()

    def unit_of_work(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self.spots, self.sessions, self._lock)

    __call__ = unit_of_work


# ============================================================================
# SQLALCHEMY MODELS
# ============================================================================

Base = declarative_base()


class SpotModel(Base):
    """SQLAlchemy model for parking spots"""
    __tablename__ = 'spots'

    id = Column(String(32), primary_key=True)
    floor = Column(Integer, nullable=False)
    bay = Column(Integer, nullable=False)
    spot_number = Column(Integer, nullable=False)
    spot_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=SpotStatus.AVAILABLE.value, index=True)
    features = Column(JSON, default=list)
    current_vehicle = Column(String(20))
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('floor', 'bay', 'spot_number', name='uq_spot_location'),
    )


class ParkingSessionModel(Base):
    """SQLAlchemy model for parking sessions"""
    __tablename__ = 'parking_sessions'

    id = Column(String(36), primary_key=True)
    license_plate = Column(String(20), nullable=False, index=True)
    vehicle_type = Column(String(20), nullable=False)
    rate_type = Column(String(20), nullable=False)
    spot_id = Column(String(32), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    check_in_time = Column(DateTime, nullable=False)
    check_out_time = Column(DateTime)
    duration_minutes = Column(Integer)
    amount_due = Column(DECIMAL(10, 2))
    currency = Column(String(3), default='USD')
    billing = Column(JSON)
    forced = Column(Boolean, default=False)
    forced_reason = Column(Text)
    is_electric = Column(Boolean, default=False)
    requires_accessible = Column(Boolean, default=False)


class Mapper:
    """Converts between ORM rows and domain objects"""

    @staticmethod
    def spot_to_domain(model: SpotModel) -> Spot:
        return Spot(
            floor=model.floor,
            bay=model.bay,
            spot_number=model.spot_number,
            spot_type=SpotType(model.spot_type),
            status=SpotStatus(model.status),
            features=[SpotFeature(f) for f in (model.features or [])],
            current_vehicle=model.current_vehicle,
        )

    @staticmethod
    def spot_to_orm(spot: Spot) -> SpotModel:
        return SpotModel(
            id=spot.id,
            floor=spot.floor,
            bay=spot.bay,
            spot_number=spot.spot_number,
            spot_type=spot.spot_type.value,
            status=spot.status.value,
            features=sorted(f.value for f in spot.features),
            current_vehicle=spot.current_vehicle,
        )

    @staticmethod
    def session_to_domain(model: ParkingSessionModel) -> ParkingSession:
        duration = None
        if model.duration_minutes is not None:
            duration = DurationBreakdown.from_minutes(model.duration_minutes)
        amount = None
        if model.amount_due is not None:
            amount = Money(Decimal(str(model.amount_due)), model.currency or 'USD')
        return ParkingSession(
            id=model.id,
            license_plate=model.license_plate,
            vehicle_type=VehicleType(model.vehicle_type),
            rate_type=RateType(model.rate_type),
            spot_id=model.spot_id,
            check_in_time=model.check_in_time,
            status=SessionStatus(model.status),
            check_out_time=model.check_out_time,
            duration=duration,
            amount_due=amount,
            billing=model.billing,
            forced=bool(model.forced),
            forced_reason=model.forced_reason,
            is_electric=bool(model.is_electric),
            requires_accessible=bool(model.requires_accessible),
        )

    @staticmethod
    def session_values(session: ParkingSession) -> Dict:
        return {
            "license_plate": str(session.license_plate),
            "vehicle_type": session.vehicle_type.value,
            "rate_type": session.rate_type.value,
            "spot_id": session.spot_id,
            "status": session.status.value,
            "check_in_time": session.check_in_time,
            "check_out_time": session.check_out_time,
            "duration_minutes": session.duration.total_minutes if session.duration else None,
            "amount_due": session.amount_due.amount if session.amount_due else None,
            "currency": session.amount_due.currency if session.amount_due else 'USD',
            "billing": session.billing,
            "forced": session.forced,
            "forced_reason": session.forced_reason,
            "is_electric": session.is_electric,
            "requires_accessible": session.requires_accessible,
        }


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemySpotInventory(SpotInventory):
    """Spot inventory backed by a SQLAlchemy session"""

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    def get_all(self) -> List[Spot]:
        try:
            models = self.session.query(SpotModel).order_by(
                SpotModel.floor, SpotModel.bay, SpotModel.spot_number
            ).all()
            return [Mapper.spot_to_domain(m) for m in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error loading spots: {e}")
            raise

    def get(self, spot_id: str) -> Optional[Spot]:
        model = self.session.get(SpotModel, spot_id)
        return Mapper.spot_to_domain(model) if model else None

    def add(self, spot: Spot) -> Spot:
        try:
            self.session.add(Mapper.spot_to_orm(spot))
            self.session.flush()
            self._logger.debug(f"Added spot {spot.id}")
            return spot
        except SQLAlchemyError as e:
            self._logger.error(f"Database error adding spot {spot.id}: {e}")
            raise

    def occupy(self, spot_id: str, license_plate: str) -> Spot:
        plate = str(LicensePlate.of(license_plate))
        try:
            result = self.session.query(SpotModel).filter(
                SpotModel.id == spot_id,
                SpotModel.status == SpotStatus.AVAILABLE.value,
            ).update({
                'status': SpotStatus.OCCUPIED.value,
                'current_vehicle': plate,
                'updated_at': datetime.utcnow(),
            }, synchronize_session='fetch')
            self.session.flush()
        except SQLAlchemyError as e:
            self._logger.error(f"Database error occupying spot {spot_id}: {e}")
            raise

        if result == 0:
            raise SpotStateConflictError(f"Spot {spot_id} is not available", spot_id=spot_id)
        return self.get(spot_id)

    def release(self, spot_id: str, license_plate: str) -> Spot:
        plate = str(LicensePlate.of(license_plate))
        try:
            result = self.session.query(SpotModel).filter(
                SpotModel.id == spot_id,
                SpotModel.status == SpotStatus.OCCUPIED.value,
                SpotModel.current_vehicle == plate,
            ).update({
                'status': SpotStatus.AVAILABLE.value,
                'current_vehicle': None,
                'updated_at': datetime.utcnow(),
            }, synchronize_session='fetch')
            self.session.flush()
        except SQLAlchemyError as e:
            self._logger.error(f"Database error releasing spot {spot_id}: {e}")
            raise

        if result == 0:
            raise SpotStateConflictError(
                f"Spot {spot_id} is not occupied by {plate}", spot_id=spot_id
            )
        return self.get(spot_id)

    def set_status(self, spot_id: str, status: SpotStatus) -> Spot:
        if status == SpotStatus.OCCUPIED:
            raise SpotStateConflictError("Use occupy() to occupy a spot", spot_id=spot_id)
        result = self.session.query(SpotModel).filter(
            SpotModel.id == spot_id,
            SpotModel.status != SpotStatus.OCCUPIED.value,
        ).update({'status': status.value, 'updated_at': datetime.utcnow()},
                 synchronize_session='fetch')
        self.session.flush()
        if result == 0:
            raise SpotStateConflictError(
                f"Spot {spot_id} does not exist or is occupied", spot_id=spot_id
            )
        return self.get(spot_id)

    def count(self) -> int:
        return self.session.query(SpotModel).count()


class SQLAlchemySessionStore(SessionStore):
    """Session store backed by a SQLAlchemy session"""

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    def get(self, session_id: str) -> Optional[ParkingSession]:
        model = self.session.get(ParkingSessionModel, session_id)
        return Mapper.session_to_domain(model) if model else None

    def find_active(self, license_plate: str) -> Optional[ParkingSession]:
        model = self.session.query(ParkingSessionModel).filter(
            ParkingSessionModel.license_plate == str(LicensePlate.of(license_plate)),
            ParkingSessionModel.status == SessionStatus.ACTIVE.value,
        ).first()
        return Mapper.session_to_domain(model) if model else None

    def find_all_active(self) -> List[ParkingSession]:
        models = self.session.query(ParkingSessionModel).filter(
            ParkingSessionModel.status == SessionStatus.ACTIVE.value
        ).order_by(ParkingSessionModel.check_in_time).all()
        return [Mapper.session_to_domain(m) for m in models]

    def find_completed(self) -> List[ParkingSession]:
        models = self.session.query(ParkingSessionModel).filter(
            ParkingSessionModel.status == SessionStatus.COMPLETED.value
        ).order_by(ParkingSessionModel.check_out_time).all()
        return [Mapper.session_to_domain(m) for m in models]

    def add(self, session: ParkingSession) -> ParkingSession:
        try:
            self.session.add(ParkingSessionModel(id=session.id, **Mapper.session_values(session)))
            self.session.flush()
            self._logger.debug(f"Added session {session.id}")
            return session
        except SQLAlchemyError as e:
            self._logger.error(f"Database error adding session {session.id}: {e}")
            raise

    def update(self, session: ParkingSession) -> ParkingSession:
        try:
            result = self.session.query(ParkingSessionModel).filter(
                ParkingSessionModel.id == session.id
            ).update(Mapper.session_values(session), synchronize_session='fetch')
            self.session.flush()
        except SQLAlchemyError as e:
            self._logger.error(f"Database error updating session {session.id}: {e}")
            raise
        if result == 0:
            raise KeyError(f"Session {session.id} not found")
        return session


class SQLAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work implementation with SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        super().__init__()
        self.session_factory = session_factory
        self.session: Optional[Session] = None

    @property
    def spots(self) -> SQLAlchemySpotInventory:
        return self._spots

    @property
    def sessions(self) -> SQLAlchemySessionStore:
        return self._sessions

    def _begin(self) -> None:
        self.session = self.session_factory()
        self._spots = SQLAlchemySpotInventory(self.session)
        self._sessions = SQLAlchemySessionStore(self.session)

    def commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self._logger.error(f"Commit failed: {e}")
            self.session.rollback()
            raise

    def rollback(self) -> None:
        self.session.rollback()

    def _end(self) -> None:
        self.session.close()
        self.session = None


def create_session_factory(engine):
    """Create the schema if needed and return a session factory"""
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


class SQLAlchemyStorage:
    """Hands out SQLAlchemy units of work for one database"""

    def __init__(self, database_url: str = "sqlite:///parkcore.db", echo: bool = False):
        self.database_url = database_url
        self.engine = create_engine(database_url, echo=echo)
        self.session_factory = create_session_factory(self.engine)

    def unit_of_work(self) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(self.session_factory)

    def dispose(self) -> None:
        self.engine.dispose()

    __call__ = unit_of_work
