"""Image store - in-memory image list with copy-on-write updates."""

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from genai_patcher.core.exceptions import CompositingError
from genai_patcher.core.utils import natural_sort_key
from genai_patcher.enums import RegionSource, RegionStatus
from genai_patcher.models import ImageRecord, Region
from genai_patcher.services import history
from genai_patcher.services.compositing import (
    decode_image,
    encode_png,
    extract_crop_feathered,
    stitch,
)

logger = logging.getLogger(__name__)

ImageListener = Callable[[ImageRecord], None]


class ImageStore:
    """
    Ordered collection of images.

    Every mutation replaces the touched image (and region) with a new object
    and swaps in a new tuple, so earlier references keep describing the state
    they were taken from. All updates are keyed by id against the latest
    state, so concurrently resolving tasks never clobber sibling regions.
    """

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._images: tuple[ImageRecord, ...] = ()
        self._listeners: list[ImageListener] = []

    @property
    def images(self) -> tuple[ImageRecord, ...]:
        """
        Get the current image list.

        Returns:
            tuple[ImageRecord, ...]: Images in display order.
        """
        return self._images

    def subscribe(self, listener: ImageListener) -> Callable[[], None]:
        """
        Register a callback invoked with every updated image.

        Args:
            listener (ImageListener): Callback.

        Returns:
            Callable[[], None]: Function that removes the listener.
        """
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def get(self, image_id: str) -> ImageRecord | None:
        """
        Get an image by id.

        Args:
            image_id (str): Image identifier.

        Returns:
            ImageRecord | None: The image, or None if unknown.
        """
        for image in self._images:
            if image.id == image_id:
                return image
        return None

    def _require(self, image_id: str) -> ImageRecord:
        image = self.get(image_id)
        if image is None:
            raise KeyError(f"Unknown image: {image_id}")
        return image

    def _replace(self, image: ImageRecord) -> ImageRecord:
        self._images = tuple(image if current.id == image.id else current for current in self._images)
        for listener in list(self._listeners):
            listener(image)
        return image

    def add_image(
        self,
        data: bytes,
        name: str = "image.png",
        custom_prompt: str | None = None,
    ) -> ImageRecord:
        """
        Decode and add an image, keeping the list naturally sorted by name.

        Args:
            data (bytes): Encoded image.
            name (str): Display name.
            custom_prompt (str | None): Per-image prompt override.

        Returns:
            ImageRecord: The added image.

        Raises:
            CompositingError: If the data cannot be decoded.
        """
        bitmap = decode_image(data)
        height, width = bitmap.shape[:2]
        preview = encode_png(bitmap)
        image = ImageRecord(
            name=name,
            preview=preview,
            original_width=width,
            original_height=height,
            custom_prompt=custom_prompt,
            history=history.initial_history(preview, width, height),
        )
        self._images = tuple(
            sorted(self._images + (image,), key=lambda item: natural_sort_key(item.name))
        )
        logger.debug(f"Added image {name} ({width}x{height})")
        return image

    def update_image(self, image_id: str, **patch: Any) -> ImageRecord:
        """
        Replace fields of one image.

        Args:
            image_id (str): Image identifier.
            **patch: Fields to replace.

        Returns:
            ImageRecord: The updated image.
        """
        return self._replace(self._require(image_id).model_copy(update=patch))

    def update_region(self, image_id: str, region_id: str, **patch: Any) -> Region | None:
        """
        Replace fields of one region, leaving its siblings untouched.

        Args:
            image_id (str): Image identifier.
            region_id (str): Region identifier.
            **patch: Fields to replace.

        Returns:
            Region | None: The updated region, or None if it no longer exists.
        """
        updated = self.update_regions(image_id, {region_id: patch})
        return updated[0] if updated else None

    def update_regions(
        self, image_id: str, patches: Mapping[str, Mapping[str, Any]]
    ) -> list[Region]:
        """
        Replace fields of several regions of one image at once.

        Regions that were deleted in the meantime are skipped.

        Args:
            image_id (str): Image identifier.
            patches (Mapping[str, Mapping[str, Any]]): Region id to fields.

        Returns:
            list[Region]: Updated regions that still existed.
        """
        image = self.get(image_id)
        if image is None:
            return []
        updated: list[Region] = []
        regions: list[Region] = []
        for region in image.regions:
            patch = patches.get(region.id)
            if patch is None:
                regions.append(region)
                continue
            new_region = region.model_copy(update=dict(patch))
            regions.append(new_region)
            updated.append(new_region)
        if updated:
            self._replace(image.model_copy(update={"regions": tuple(regions)}))
        return updated

    def set_regions(self, image_id: str, regions: Iterable[Region]) -> ImageRecord:
        """
        Replace the region list, syncing the current snapshot.

        Re-stitches when a final result already exists.

        Args:
            image_id (str): Image identifier.
            regions (Iterable[Region]): New regions.

        Returns:
            ImageRecord: The updated image.
        """
        image = self._require(image_id).model_copy(update={"regions": tuple(regions)})
        if image.final_result is not None:
            image = image.model_copy(update={"final_result": self._stitch(image)})
        return self._replace(history.sync_current(image))

    def add_regions(self, image_id: str, regions: Iterable[Region]) -> ImageRecord:
        """
        Append regions to an image.

        Args:
            image_id (str): Image identifier.
            regions (Iterable[Region]): Regions to append.

        Returns:
            ImageRecord: The updated image.
        """
        image = self._require(image_id)
        return self.set_regions(image_id, image.regions + tuple(regions))

    def set_region_prompt(self, image_id: str, region_id: str, prompt: str | None) -> Region | None:
        """
        Set a per-region prompt override.

        Args:
            image_id (str): Image identifier.
            region_id (str): Region identifier.
            prompt (str | None): Prompt, or None to clear it.

        Returns:
            Region | None: The updated region.
        """
        return self.update_region(image_id, region_id, custom_prompt=prompt or None)

    def set_image_prompt(self, image_id: str, prompt: str | None) -> ImageRecord:
        """
        Set a per-image prompt override.

        Args:
            image_id (str): Image identifier.
            prompt (str | None): Prompt, or None to clear it.

        Returns:
            ImageRecord: The updated image.
        """
        return self.update_image(image_id, custom_prompt=prompt or None)

    def toggle_skip(self, image_id: str) -> ImageRecord:
        """
        Flip whether an image is excluded from batch runs.

        Args:
            image_id (str): Image identifier.

        Returns:
            ImageRecord: The updated image.
        """
        image = self._require(image_id)
        return self.update_image(image_id, skip=not image.skip)

    def delete_image(self, image_id: str) -> None:
        """
        Remove an image.

        Args:
            image_id (str): Image identifier.
        """
        self._images = tuple(image for image in self._images if image.id != image_id)

    def clear(self) -> None:
        """Remove every image."""
        self._images = ()

    def reset_processing(
        self,
        image_ids: Iterable[str] | None = None,
        region_ids: Iterable[str] | None = None,
    ) -> int:
        """
        Return processing regions to pending.

        Args:
            image_ids (Iterable[str] | None): Images to reset, all when None.
            region_ids (Iterable[str] | None): Regions to reset, all when None.

        Returns:
            int: Number of regions reset.
        """
        targets = set(image_ids) if image_ids is not None else None
        claimed = set(region_ids) if region_ids is not None else None
        reset = 0
        for image in self._images:
            if targets is not None and image.id not in targets:
                continue
            patches = {
                region.id: {"status": RegionStatus.PENDING, "processed_result": None}
                for region in image.regions
                if region.status == RegionStatus.PROCESSING
                and (claimed is None or region.id in claimed)
            }
            if patches:
                reset += len(self.update_regions(image.id, patches))
        return reset

    def _stitch(self, image: ImageRecord) -> bytes:
        return encode_png(stitch(decode_image(image.preview), image.regions))

    def restitch(self, image_id: str) -> ImageRecord:
        """
        Rebuild the final result from the baseline and completed regions.

        Args:
            image_id (str): Image identifier.

        Returns:
            ImageRecord: The updated image.
        """
        image = self._require(image_id)
        return self._replace(image.model_copy(update={"final_result": self._stitch(image)}))

    def apply_manual_patch(self, image_id: str, region_id: str | None, data: bytes) -> ImageRecord:
        """
        Store a manually edited fragment and re-stitch.

        Args:
            image_id (str): Image identifier.
            region_id (str | None): Region to complete, or None to add a
                completed full-canvas region holding data.
            data (bytes): Encoded fragment.

        Returns:
            ImageRecord: The updated image.
        """
        image = self._require(image_id)
        fragment = encode_png(decode_image(data))
        if region_id is None:
            regions = image.regions + (
                Region.full_canvas(
                    status=RegionStatus.COMPLETED,
                    processed_result=fragment,
                    source=RegionSource.MANUAL,
                ),
            )
        else:
            if image.get_region(region_id) is None:
                raise KeyError(f"Unknown region: {region_id}")
            regions = tuple(
                region.model_copy(
                    update={"status": RegionStatus.COMPLETED, "processed_result": fragment}
                )
                if region.id == region_id
                else region
                for region in image.regions
            )
        image = image.model_copy(update={"regions": regions})
        image = image.model_copy(update={"final_result": self._stitch(image)})
        return self._replace(history.sync_current(image))

    def re_extract(self, image_id: str, opaque_percent: float) -> ImageRecord:
        """
        Rebuild completed region fragments from the stored full-image result.

        Args:
            image_id (str): Image identifier.
            opaque_percent (float): Opaque core for feathering.

        Returns:
            ImageRecord: The updated image.

        Raises:
            CompositingError: If the image has no full-image result.
        """
        image = self._require(image_id)
        if image.full_ai_result is None:
            raise CompositingError(f"Image {image_id} has no full-image result to extract from")
        full_result = decode_image(image.full_ai_result)
        regions = tuple(
            region.model_copy(
                update={
                    "processed_result": encode_png(
                        extract_crop_feathered(
                            full_result,
                            region,
                            image.original_width,
                            image.original_height,
                            opaque_percent,
                        )
                    )
                }
            )
            if region.status == RegionStatus.COMPLETED
            else region
            for region in image.regions
        )
        image = image.model_copy(update={"regions": regions})
        return self._replace(image.model_copy(update={"final_result": self._stitch(image)}))

    def apply_result_as_original(self, image_id: str) -> ImageRecord:
        """
        Commit the final result as the new baseline. No-op without a result.

        Args:
            image_id (str): Image identifier.

        Returns:
            ImageRecord: The updated image.
        """
        image = self._require(image_id)
        if image.final_result is None:
            return image
        return self._replace(history.commit(image, image.final_result))

    def undo(self, image_id: str) -> ImageRecord:
        """
        Restore the previous snapshot of an image.

        Args:
            image_id (str): Image identifier.

        Returns:
            ImageRecord: The updated image.
        """
        image = self._require(image_id)
        if not image.can_undo:
            return image
        return self._replace(history.undo(image))

    def redo(self, image_id: str) -> ImageRecord:
        """
        Restore the next snapshot of an image.

        Args:
            image_id (str): Image identifier.

        Returns:
            ImageRecord: The updated image.
        """
        image = self._require(image_id)
        if not image.can_redo:
            return image
        return self._replace(history.redo(image))
