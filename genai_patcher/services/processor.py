"""Region processing orchestrator."""

import logging
from collections.abc import Sequence

import numpy as np
from pydantic import BaseModel, Field

from genai_patcher.core.exceptions import CompositingError, PatcherError, ProcessingCancelled
from genai_patcher.core.settings import AppSettings
from genai_patcher.core.utils import hex_to_bgra
from genai_patcher.enums import ProcessingStep, ProcessScope, RegionStatus
from genai_patcher.models import ImageRecord, Region
from genai_patcher.services.compositing import (
    PaddingInfo,
    crop,
    decode_image,
    depad_from_square,
    encode_png,
    extract_crop_feathered,
    multi_mask,
    pad_to_square,
    region_to_pixel_rect,
    stitch_inverted,
)
from genai_patcher.services.concurrency import (
    AsyncSemaphore,
    CancellationToken,
    run_with_concurrency,
)
from genai_patcher.services.detection_service import DetectionClient
from genai_patcher.services.edit_service import (
    EditServiceClient,
    TranslationClient,
    append_translation,
)
from genai_patcher.services.image_store import ImageStore

logger = logging.getLogger(__name__)

STOPPED_BY_USER = "Stopped by user"


class ProcessReport(BaseModel):
    """Outcome of one process() call."""

    images: int = Field(default=0, description="Images targeted")
    completed: int = Field(default=0, description="Regions completed")
    failed: int = Field(default=0, description="Regions failed")
    cancelled: bool = Field(default=False, description="Whether the run was stopped")


class RegionProcessor:
    """
    Drives images through mask/crop, remote edit and extract/stitch.

    One cancellation token is created per run. A single semaphore sized to
    the concurrency limit gates every remote call of the run, so the limit
    bounds in-flight calls system wide, while the same limit also bounds how
    many images and how many regions per image are admitted at once.
    """

    def __init__(
        self,
        store: ImageStore,
        settings: AppSettings,
        edit_client: EditServiceClient | None = None,
        translation_client: TranslationClient | None = None,
        detection_client: DetectionClient | None = None,
    ) -> None:
        """
        Initialize the processor.

        Args:
            store (ImageStore): Image state container.
            settings (AppSettings): Application settings.
            edit_client (EditServiceClient | None): Edit client, built from settings when None.
            translation_client (TranslationClient | None): Translation client.
            detection_client (DetectionClient | None): Detection and OCR client.
        """
        self.store = store
        self.settings = settings
        self.edit_client = edit_client or EditServiceClient(settings.edit_service)
        self.translation_client = translation_client or TranslationClient(settings.translation)
        self.detection_client = detection_client or DetectionClient(settings.detection)
        self.step = ProcessingStep.IDLE
        self.error_message: str | None = None
        self._token: CancellationToken | None = None
        # Region ids marked processing by the current run
        self._claimed: set[str] = set()

    @property
    def is_running(self) -> bool:
        """Whether a run or detection pass is in flight."""
        return self._token is not None and not self._token.cancelled

    def _targets(self, scope: ProcessScope, selected_image_id: str | None) -> list[str]:
        if scope == ProcessScope.ALL:
            return [image.id for image in self.store.images if not image.skip]
        if selected_image_id is None:
            return []
        image = self.store.get(selected_image_id)
        return [image.id] if image is not None else []

    def _abandon(self, reason: str) -> int:
        """
        Cancel the current run and release the regions it claimed.

        The claimed set is emptied in place, leaving the abandoned run's own
        cleanup nothing to reset.
        """
        if self._token is not None:
            self._token.cancel(reason)
            self._token = None
        reset = self.store.reset_processing(region_ids=self._claimed)
        self._claimed.clear()
        return reset

    def _start(self) -> tuple[CancellationToken, set[str]]:
        if self._token is not None:
            reset = self._abandon("superseded by a new run")
            logger.info(f"Previous run superseded, {reset} regions reset to pending")
        token = CancellationToken()
        claimed: set[str] = set()
        self._token = token
        self._claimed = claimed
        return token, claimed

    def _finish(self, token: CancellationToken) -> None:
        if self._token is token:
            self._token = None
            self._claimed = set()

    def stop(self) -> None:
        """Cancel the current run and return processing regions to pending."""
        reset = self._abandon("stopped by user") + self.store.reset_processing()
        logger.info(f"Processing stopped by user, {reset} regions reset to pending")
        self.step = ProcessingStep.IDLE
        self.error_message = STOPPED_BY_USER

    async def process(
        self,
        scope: ProcessScope = ProcessScope.SELECTED,
        selected_image_id: str | None = None,
    ) -> ProcessReport:
        """
        Process the pending and failed regions of the targeted images.

        Args:
            scope (ProcessScope): Selected image only, or all non-skipped images.
            selected_image_id (str | None): Image used with the SELECTED scope.

        Returns:
            ProcessReport: Counts of completed and failed regions.

        Raises:
            ConfigurationError: If a required service is not configured.
        """
        targets = self._targets(scope, selected_image_id)
        if not targets:
            self.step = ProcessingStep.IDLE
            return ProcessReport()

        self.edit_client.validate()
        if self.settings.processing.enable_translation_mode:
            self.translation_client.validate()

        token, claimed = self._start()
        self.step = ProcessingStep.CROPPING
        self.error_message = None
        report = ProcessReport(images=len(targets))
        limit = self.settings.processing.effective_concurrency
        semaphore = AsyncSemaphore(limit)
        logger.info(f"Processing {len(targets)} image(s) with concurrency {limit}")

        try:
            await run_with_concurrency(
                targets,
                limit,
                lambda image_id: self._process_image(image_id, token, semaphore, report, claimed),
                token,
            )
        finally:
            superseded = self._token is not None and self._token is not token
            if token.cancelled:
                self.store.reset_processing(region_ids=claimed)
                report.cancelled = True
            self._finish(token)

        if not superseded:
            self.step = ProcessingStep.DONE
        logger.info(
            f"Processing finished: {report.completed} completed, {report.failed} failed"
            + (" (stopped)" if report.cancelled else "")
        )
        return report

    def _mark_failed(
        self, image_id: str, regions: Sequence[Region], report: ProcessReport, reason: str
    ) -> None:
        logger.warning(f"{len(regions)} region(s) of image {image_id} failed: {reason}")
        self.store.update_regions(
            image_id,
            {r.id: {"status": RegionStatus.FAILED, "processed_result": None} for r in regions},
        )
        report.failed += len(regions)

    async def _process_image(
        self,
        image_id: str,
        token: CancellationToken,
        semaphore: AsyncSemaphore,
        report: ProcessReport,
        claimed: set[str],
    ) -> None:
        if token.cancelled:
            return
        image = self.store.get(image_id)
        if image is None or image.skip:
            return

        use_image_prompt = False
        if not image.regions and self.settings.processing.process_full_image_if_no_regions:
            image = self.store.set_regions(image_id, [Region.full_canvas()])
            use_image_prompt = True

        selected = [region for region in image.regions if region.status.is_submittable]
        if not selected:
            return

        try:
            bitmap = decode_image(image.preview)
        except CompositingError as e:
            self._mark_failed(image_id, selected, report, str(e))
            return

        height, width = bitmap.shape[:2]
        valid: list[Region] = []
        invalid: list[Region] = []
        for region in selected:
            try:
                region_to_pixel_rect(region, width, height)
                valid.append(region)
            except CompositingError:
                invalid.append(region)
        if invalid:
            self._mark_failed(image_id, invalid, report, "region collapses to zero size")
        if not valid:
            return

        self.store.update_regions(
            image_id, {region.id: {"status": RegionStatus.PROCESSING} for region in valid}
        )
        claimed.update(region.id for region in valid)
        if token.cancelled:
            return

        processing = self.settings.processing
        if processing.use_full_image_masking:
            await self._process_full_image(image, bitmap, valid, token, semaphore, report)
            if processing.use_inverted_masking:
                return
        else:
            await run_with_concurrency(
                valid,
                processing.effective_concurrency,
                lambda region: self._process_region(
                    image, bitmap, region, use_image_prompt, token, semaphore, report
                ),
                token,
            )

        if not token.cancelled:
            self._restitch(image_id)

    def _restitch(self, image_id: str) -> None:
        image = self.store.get(image_id)
        if image is None or not any(r.status == RegionStatus.COMPLETED for r in image.regions):
            return
        self.step = ProcessingStep.STITCHING
        try:
            self.store.restitch(image_id)
        except CompositingError as e:
            logger.error(f"Failed to stitch image {image_id}: {e}")

    def _fill_color(self) -> tuple[int, int, int, int]:
        return hex_to_bgra(self.settings.processing.mask_fill_color)

    def _prepare_payload(self, bitmap: np.ndarray) -> tuple[bytes, PaddingInfo | None]:
        if not self.settings.processing.enable_square_fill:
            return encode_png(bitmap), None
        square, padding = pad_to_square(bitmap, self._fill_color())
        return encode_png(square), padding

    def _read_result(self, data: bytes, padding: PaddingInfo | None) -> np.ndarray:
        result = decode_image(data)
        if padding is not None:
            result = depad_from_square(result, padding)
        return result

    async def _with_translation(self, payload: bytes, prompt: str, token: CancellationToken) -> str:
        if not self.settings.processing.enable_translation_mode:
            return prompt
        self.step = ProcessingStep.API_CALLING
        translation = await self.translation_client.translate(payload, token)
        return append_translation(prompt, translation)

    def _region_prompt(self, image: ImageRecord, region: Region, use_image_prompt: bool) -> str:
        prompt = self.settings.processing.prompt.strip()
        if use_image_prompt and image.custom_prompt:
            prompt = image.custom_prompt.strip()
        if region.custom_prompt and region.custom_prompt.strip():
            prompt = f"{prompt} {region.custom_prompt.strip()}"
        return prompt

    async def _acquire(self, semaphore: AsyncSemaphore, token: CancellationToken) -> bool:
        try:
            await token.run(semaphore.acquire())
        except ProcessingCancelled:
            return False
        return True

    async def _process_region(
        self,
        image: ImageRecord,
        bitmap: np.ndarray,
        region: Region,
        use_image_prompt: bool,
        token: CancellationToken,
        semaphore: AsyncSemaphore,
        report: ProcessReport,
    ) -> None:
        if token.cancelled or not await self._acquire(semaphore, token):
            return
        try:
            if token.cancelled:
                return
            payload, padding = self._prepare_payload(crop(bitmap, region))
            prompt = await self._with_translation(
                payload, self._region_prompt(image, region, use_image_prompt), token
            )

            self.step = ProcessingStep.API_CALLING
            logger.debug(f"Editing region {region.id} of image {image.id}")
            raw_result = await self.edit_client.edit(payload, prompt, token)
            result = encode_png(self._read_result(raw_result, padding))

            if token.cancelled:
                return
            self.store.update_region(
                image.id, region.id, status=RegionStatus.COMPLETED, processed_result=result
            )
            report.completed += 1
        except ProcessingCancelled:
            return
        except PatcherError as e:
            if not token.cancelled:
                self._mark_failed(image.id, [region], report, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error editing region {region.id}")
            if not token.cancelled:
                self._mark_failed(image.id, [region], report, str(e))
        finally:
            semaphore.release()

    async def _process_full_image(
        self,
        image: ImageRecord,
        bitmap: np.ndarray,
        regions: Sequence[Region],
        token: CancellationToken,
        semaphore: AsyncSemaphore,
        report: ProcessReport,
    ) -> None:
        if not await self._acquire(semaphore, token):
            return
        processing = self.settings.processing
        try:
            token.raise_if_cancelled()
            masked = multi_mask(
                bitmap, regions, inverted=processing.use_inverted_masking, fill=self._fill_color()
            )
            payload, padding = self._prepare_payload(masked)
            prompt = (image.custom_prompt or processing.prompt).strip()
            prompt = await self._with_translation(payload, prompt, token)

            self.step = ProcessingStep.API_CALLING
            logger.debug(f"Editing masked full image {image.id} ({len(regions)} regions)")
            raw_result = await self.edit_client.edit(payload, prompt, token)
            result = self._read_result(raw_result, padding)
            token.raise_if_cancelled()

            height, width = bitmap.shape[:2]
            self.step = ProcessingStep.STITCHING
            if processing.use_inverted_masking:
                stitched = stitch_inverted(
                    bitmap, result, regions, processing.aspect_mismatch_policy
                )
                patches = {
                    region.id: {
                        "status": RegionStatus.COMPLETED,
                        "processed_result": encode_png(crop(bitmap, region)),
                    }
                    for region in regions
                }
                self.store.update_regions(image.id, patches)
                self.store.update_image(
                    image.id,
                    full_ai_result=encode_png(result),
                    final_result=encode_png(stitched),
                )
            else:
                patches = {
                    region.id: {
                        "status": RegionStatus.COMPLETED,
                        "processed_result": encode_png(
                            extract_crop_feathered(
                                result,
                                region,
                                width,
                                height,
                                processing.full_image_opaque_percent,
                            )
                        ),
                    }
                    for region in regions
                }
                self.store.update_regions(image.id, patches)
                self.store.update_image(image.id, full_ai_result=encode_png(result))
            report.completed += len(regions)
        except ProcessingCancelled:
            return
        except PatcherError as e:
            if not token.cancelled:
                self._mark_failed(image.id, regions, report, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error editing image {image.id}")
            if not token.cancelled:
                self._mark_failed(image.id, regions, report, str(e))
        finally:
            semaphore.release()

    async def auto_detect(
        self,
        scope: ProcessScope = ProcessScope.SELECTED,
        selected_image_id: str | None = None,
    ) -> int:
        """
        Detect text bubbles and append them as pending regions.

        Per-image failures are logged and do not stop other images.

        Args:
            scope (ProcessScope): Selected image only, or all non-skipped images.
            selected_image_id (str | None): Image used with the SELECTED scope.

        Returns:
            int: Number of regions added.

        Raises:
            ConfigurationError: If the detection endpoint is not configured.
        """
        targets = self._targets(scope, selected_image_id)
        if not targets:
            return 0
        self.detection_client.validate_detection()
        token, _ = self._start()
        self.error_message = None

        async def detect(image_id: str) -> int:
            image = self.store.get(image_id)
            if image is None:
                return 0
            try:
                regions = await self.detection_client.detect(image.preview, token)
            except ProcessingCancelled:
                return 0
            except PatcherError as e:
                logger.error(f"Detection failed for {image.name}: {e}")
                return 0
            if regions and not token.cancelled:
                self.store.add_regions(image_id, regions)
            return len(regions)

        try:
            counts = await run_with_concurrency(
                targets, self.settings.processing.effective_concurrency, detect, token
            )
        finally:
            self._finish(token)
        return sum(counts)

    async def recognize_region(self, image_id: str, region_id: str) -> str:
        """
        Run OCR on one region and store the text on it.

        Args:
            image_id (str): Image identifier.
            region_id (str): Region identifier.

        Returns:
            str: Recognized text.

        Raises:
            KeyError: If the image or region does not exist.
            ConfigurationError: If the OCR endpoint is not configured.
            DetectionServiceError: If recognition fails.
        """
        image = self.store.get(image_id)
        region = image.get_region(region_id) if image is not None else None
        if image is None or region is None:
            raise KeyError(f"Unknown region {region_id} on image {image_id}")
        self.detection_client.validate_ocr()
        fragment = encode_png(crop(decode_image(image.preview), region))
        text = await self.detection_client.recognize(fragment, CancellationToken())
        self.store.update_region(image_id, region_id, ocr_text=text)
        return text
