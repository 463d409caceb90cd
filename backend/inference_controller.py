"""
Inference Controller

Drives one study through

    RECEIVED -> STORED -> ROUTED -> PREPROCESSED -> PREDICTED -> AGGREGATED -> PERSISTED

Upload validates every file before writing any of them. Analysis selects the
model before claiming the record, preprocesses images off the event loop,
fans the forward passes out to the bounded InferenceWorkerPool and commits
predictions, aggregate and warnings in one store transaction.

Per-image ImageDecodeFailed / ShapeMismatch / InferenceFailed become record
warnings. ModelLoadFailed, a routing failure or an analysis where no image
succeeds fail the record. The whole analysis runs under INFERENCE_TIMEOUT_MS.
"""

import asyncio
import inspect
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from config import INFERENCE_TIMEOUT_MS, MAX_IMAGES_PER_UPLOAD, WORKER_POOL_SIZE
from errors import (
    AnalysisCancelled, DiagnosticsError, ImageDecodeFailed, InferenceFailed,
    InferenceTimeout, InvalidTransition, InvalidUpload, NoCompatibleModel,
    RecordNotFound, ShapeMismatch,
)
from image_store import ImageStore
from inference_engine import InferenceEngine
from model_registry import Modality, ModelDescriptor, ModelRegistry
from model_router import ModelRouter, routing_order
from preprocessing import PreprocessingPipeline
from record_aggregator import PerImagePrediction, aggregate, explain
from record_store import Page, Record, RecordFilters, RecordStatus, RecordStore
from structured_logging import LogContext, get_logger

logger = get_logger(__name__)


class InferenceWorkerPool:
    """Bounded pool of inference threads with a FIFO job queue."""

    def __init__(self, size: int = WORKER_POOL_SIZE):
        self.size = size
        self._executor = ThreadPoolExecutor(max_workers=size, thread_name_prefix="inference")

    def submit(self, fn: Callable, *args) -> Future:
        return self._executor.submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)


@dataclass
class UploadedFile:
    filename: str
    data: bytes
    content_type: Optional[str] = None


# Returns truthy once the client has gone away. May be sync or async.
CancelCheck = Callable[[], Any]


def _is_admin(principal) -> bool:
    return principal.role == "admin"


class InferenceController:
    def __init__(
        self,
        store: RecordStore,
        image_store: ImageStore,
        registry: ModelRegistry,
        engine: InferenceEngine,
        pool: InferenceWorkerPool,
        pipeline: Optional[PreprocessingPipeline] = None,
        timeout_ms: int = INFERENCE_TIMEOUT_MS,
        max_images: int = MAX_IMAGES_PER_UPLOAD,
    ):
        self.store = store
        self.image_store = image_store
        self.registry = registry
        self.engine = engine
        self.pool = pool
        self.pipeline = pipeline or PreprocessingPipeline()
        self.router = ModelRouter(registry)
        self.timeout_ms = timeout_ms
        self.max_images = max_images

    # =========================================================================
    # RECEIVED -> STORED
    # =========================================================================

    def validate_study(self, modality: str, body_part: str):
        """Normalise and check modality and body part against the vocabulary."""
        modality = (modality or "").strip().lower()
        body_part = (body_part or "").strip().lower()
        vocabulary = self.registry.vocabulary()

        if modality not in vocabulary["modalities"]:
            allowed = ", ".join(m.value for m in Modality)
            raise InvalidUpload(f"Unknown modality '{modality}'. Expected one of: {allowed}")
        if body_part not in vocabulary["body_parts"]:
            raise InvalidUpload(f"Unknown body part '{body_part}'")
        return modality, body_part

    def upload(
        self,
        principal_id: int,
        files: Sequence[UploadedFile],
        modality: str,
        body_part: str,
        patient_history: Optional[Dict[str, Any]] = None,
        notes: str = "",
    ) -> Record:
        modality, body_part = self.validate_study(modality, body_part)

        if not files:
            raise InvalidUpload("At least one image is required")
        if len(files) > self.max_images:
            raise InvalidUpload(f"A study can contain at most {self.max_images} images")

        # Reject the whole batch before anything touches disk
        for f in files:
            self.image_store.validate(f.filename, len(f.data))

        stored = []
        try:
            for f in files:
                stored.append(self.image_store.put(principal_id, f.filename, f.data, f.content_type))
            record = self.store.create(
                principal_id=principal_id,
                modality=modality,
                body_part=body_part,
                image_ids=[image.id for image in stored],
                patient_history=patient_history,
                notes=notes,
            )
        except Exception:
            logger.warning(
                "Upload aborted, removing stored originals",
                extra={"stored_images": [image.id for image in stored]},
            )
            for image in stored:
                self.image_store.delete(image.id)
            raise

        logger.info(
            "Study uploaded",
            extra={"record_id": record.id, "modality": modality, "body_part": body_part, "image_count": len(stored)},
        )
        return record

    # =========================================================================
    # Record access
    # =========================================================================

    def get_record(self, record_id: int, principal) -> Record:
        record = self.store.get(record_id)
        if record.principal_id != principal.id and not _is_admin(principal):
            raise RecordNotFound(f"Medical record {record_id} not found", record_id=record_id)
        return record

    def list_records(self, principal, filters: Optional[RecordFilters] = None, page: int = 1, limit: int = 10) -> Page:
        principal_id = None if _is_admin(principal) else principal.id
        return self.store.list(principal_id, filters, page=page, limit=limit)

    def set_doctor_diagnosis(self, record_id: int, principal, diagnosis: str, notes: Optional[str] = None) -> Record:
        record = self.store.set_doctor_diagnosis(record_id, diagnosis, notes, diagnosed_by=principal.id)
        logger.info("Doctor diagnosis recorded", extra={"record_id": record_id, "diagnosed_by": principal.id})
        return record

    def delete_record(self, record_id: int, principal) -> None:
        """Delete the record, then every image no other record references."""
        record = self.get_record(record_id, principal)
        self.store.delete(record_id)
        for image_id in record.image_ids:
            if not self.store.image_is_referenced(image_id):
                self.image_store.delete(image_id)
        logger.info("Record deleted", extra={"record_id": record_id})

    def list_models(self, modality: Optional[str] = None, body_part: Optional[str] = None) -> List[ModelDescriptor]:
        """Active models, optionally narrowed to a modality and/or body part, in routing order."""
        modality = modality.strip().lower() if modality else None
        body_part = body_part.strip().lower() if body_part else None
        if modality and modality not in {m.value for m in Modality}:
            raise InvalidUpload(f"Unknown modality '{modality}'")

        descriptors = self.registry.list_active()
        if modality:
            descriptors = [d for d in descriptors if Modality(modality) in d.applicable_imaging_types]
        if body_part:
            descriptors = [d for d in descriptors if body_part in d.applicable_body_parts]
        return routing_order(descriptors)

    # =========================================================================
    # STORED -> ... -> PERSISTED
    # =========================================================================

    async def analyze(
        self,
        record_id: int,
        principal,
        model_id: Optional[str] = None,
        is_cancelled: Optional[CancelCheck] = None,
    ) -> Record:
        record = self.get_record(record_id, principal)

        if record.status == RecordStatus.ANALYZED.value:
            return record
        if record.status != RecordStatus.PENDING.value:
            raise InvalidTransition(record.status, RecordStatus.ANALYZING.value, record_id)

        try:
            descriptor = self.router.select(record, model_id)
        except NoCompatibleModel as e:
            self.store.mark_failed(record_id, e.kind, e.message)
            logger.warning("No compatible model", extra={"record_id": record_id, "modality": record.modality, "body_part": record.body_part})
            raise

        record = self.store.update_status(record_id, RecordStatus.ANALYZING.value)
        warnings: List[Dict[str, Any]] = []

        with LogContext(record_id=record_id, model_id=descriptor.id):
            start = time.perf_counter()
            try:
                record = await asyncio.wait_for(
                    self._run(record, descriptor, is_cancelled, warnings),
                    timeout=self.timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                error = InferenceTimeout(
                    f"Analysis of record {record_id} exceeded {self.timeout_ms} ms",
                    record_id=record_id,
                )
                self._mark_failed(record_id, error, warnings)
                raise error
            except (AnalysisCancelled, asyncio.CancelledError):
                self._release_claim(record_id)
                raise
            except DiagnosticsError as e:
                self._mark_failed(record_id, e, warnings)
                raise
            except Exception:
                logger.error("Analysis crashed", extra={"record_id": record_id}, exc_info=True)
                self._mark_failed(
                    record_id,
                    InferenceFailed(descriptor.id, descriptor.input_shape.tensor_shape(), "unexpected error"),
                    warnings,
                )
                raise

            logger.info(
                "Record analyzed",
                extra={
                    "record_id": record_id,
                    "label": record.aggregate_diagnosis["label"],
                    "confidence": record.aggregate_diagnosis["confidence"],
                    "warnings": len(warnings),
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            return record

    async def analyze_single(
        self,
        principal,
        file: UploadedFile,
        modality: str,
        body_part: str,
        model_id: Optional[str] = None,
        is_cancelled: Optional[CancelCheck] = None,
    ) -> Record:
        record = self.upload(principal.id, [file], modality, body_part)
        return await self.analyze(record.id, principal, model_id=model_id, is_cancelled=is_cancelled)

    async def _run(
        self,
        record: Record,
        descriptor: ModelDescriptor,
        is_cancelled: Optional[CancelCheck],
        warnings: List[Dict[str, Any]],
    ) -> Record:
        loop = asyncio.get_running_loop()
        await self._check_cancelled(record.id, is_cancelled)

        # STORED -> PREPROCESSED. Store reads stay on the loop thread, decoding does not.
        tensors = []
        for image_id in record.image_ids:
            try:
                data = self.image_store.read_bytes(image_id)
                name = self.image_store.original_name(image_id)
                tensor = await loop.run_in_executor(None, self.pipeline.run, data, descriptor, name)
            except (ImageDecodeFailed, ShapeMismatch) as e:
                warnings.append(self._warning(image_id, e))
                continue
            tensors.append((image_id, tensor))

        await self._check_cancelled(record.id, is_cancelled)

        # PREPROCESSED -> PREDICTED
        jobs = [
            (image_id, self.pool.submit(self._infer, descriptor.id, image_id, tensor))
            for image_id, tensor in tensors
        ]
        predictions: List[PerImagePrediction] = []
        inference_failures = 0
        try:
            for image_id, job in jobs:
                try:
                    predictions.append(await asyncio.wrap_future(job))
                except ShapeMismatch as e:
                    warnings.append(self._warning(image_id, e))
                except InferenceFailed as e:
                    inference_failures += 1
                    warnings.append(self._warning(image_id, e))
                await self._check_cancelled(record.id, is_cancelled)
        finally:
            # Drops queued jobs; running ones finish and their result is discarded
            for _, job in jobs:
                job.cancel()

        if not predictions:
            if inference_failures:
                raise InferenceFailed(
                    descriptor.id, descriptor.input_shape.tensor_shape(), "inference failed for every image"
                )
            raise ImageDecodeFailed(f"None of the {len(record.image_ids)} images in record {record.id} could be processed")

        # PREDICTED -> AGGREGATED -> PERSISTED
        summary = aggregate(predictions, descriptor.labels)
        summary["explanation"] = explain(summary["label"], summary["confidence"], descriptor)
        model_used = {
            "id": descriptor.id,
            "name": descriptor.name,
            "version": descriptor.version,
            "accuracy": descriptor.accuracy,
        }

        record = self.store.complete_analysis(
            record.id,
            predictions=[p.to_dict() for p in predictions],
            aggregate=summary,
            warnings=warnings,
            model_used=model_used,
        )
        self.store.record_model_usage(descriptor.id)
        return record

    def _infer(self, model_id: str, image_id: int, tensor: np.ndarray) -> PerImagePrediction:
        """Worker-thread job: one forward pass."""
        start = time.perf_counter()
        scores = self.engine.predict(model_id, tensor)
        return PerImagePrediction.from_scores(
            image_id, model_id, scores, (time.perf_counter() - start) * 1000
        )

    async def _check_cancelled(self, record_id: int, is_cancelled: Optional[CancelCheck]) -> None:
        if is_cancelled is None:
            return
        cancelled = is_cancelled()
        if inspect.isawaitable(cancelled):
            cancelled = await cancelled
        if cancelled:
            logger.info("Analysis cancelled by client", extra={"record_id": record_id})
            raise AnalysisCancelled(f"Analysis of record {record_id} was cancelled", record_id=record_id)

    def _warning(self, image_id: int, error: DiagnosticsError) -> Dict[str, Any]:
        logger.warning(
            "Image skipped",
            extra={"image_id": image_id, "error_kind": error.kind, "error": error.message},
        )
        return {"imageId": image_id, "kind": error.kind, "message": error.client_message}

    def _mark_failed(self, record_id: int, error: DiagnosticsError, warnings: List[Dict[str, Any]]) -> None:
        if error.status_code >= 500:
            logger.error("Analysis failed", extra={"record_id": record_id, "error_kind": error.kind, "error": error.message})
        else:
            logger.warning("Analysis failed", extra={"record_id": record_id, "error_kind": error.kind, "error": error.message})
        try:
            self.store.mark_failed(record_id, error.kind, error.client_message, warnings=warnings)
        except InvalidTransition:
            logger.warning("Record already left 'analyzing', failure not recorded", extra={"record_id": record_id})

    def _release_claim(self, record_id: int) -> None:
        try:
            self.store.update_status(record_id, RecordStatus.PENDING.value)
        except InvalidTransition:
            logger.warning("Could not release analysis claim", extra={"record_id": record_id})
