"""Images API routes."""
from fastapi import APIRouter, Depends, File as FastAPIFile, Request, Response, UploadFile

from image_service.schemas.artifact import (
    ArtifactRecord,
    ProcessRequest,
    ProcessResponse,
    UploadResponse,
)
from image_service.schemas.operation import parse_operations
from image_service.services.artifact_service import ArtifactService
from image_service.services.validation import content_type_for_path, sanitize_filename

router = APIRouter(prefix="/api", tags=["images"])


def get_artifact_service(request: Request) -> ArtifactService:
    """FastAPI dependency returning the service created in the app lifespan."""
    return request.app.state.artifact_service


@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_image(
    image: UploadFile = FastAPIFile(...),
    service: ArtifactService = Depends(get_artifact_service),
):
    """Upload a single image and create its record."""
    contents = await image.read()
    record = await service.upload(contents, image.filename or "unnamed", image.content_type)
    return UploadResponse(
        file_id=record.id,
        original_name=record.original_name,
        size=record.byte_size,
        content_type=record.content_type,
        preview_url=f"/api/images/{record.id}/raw",
    )


@router.post("/process", response_model=ProcessResponse)
async def process_image(
    body: ProcessRequest,
    service: ArtifactService = Depends(get_artifact_service),
):
    """Run an operation list against an uploaded image."""
    operations = parse_operations(body.operations)
    result = await service.process(body.file_id, operations)
    return ProcessResponse(
        file_id=result.file_id,
        download_url=f"/api/images/{result.file_id}/processed",
        processed_size=result.byte_size,
        format=result.format,
    )


@router.get("/images", response_model=list[ArtifactRecord])
async def list_images(service: ArtifactService = Depends(get_artifact_service)):
    """List all images (admin endpoint)."""
    return service.list_all()


@router.get("/images/{file_id}", response_model=ArtifactRecord)
async def get_image_metadata(
    file_id: str,
    service: ArtifactService = Depends(get_artifact_service),
):
    """Get image metadata by ID."""
    return service.get(file_id)


@router.get("/images/{file_id}/raw")
async def download_raw(
    file_id: str,
    service: ArtifactService = Depends(get_artifact_service),
):
    """Serve the original upload."""
    data = await service.fetch_raw(file_id)
    record = service.get(file_id)
    return Response(
        content=data,
        media_type=record.content_type,
        headers={"Cache-Control": "public, max-age=31536000"},
    )


@router.get("/images/{file_id}/processed")
async def download_processed(
    file_id: str,
    service: ArtifactService = Depends(get_artifact_service),
):
    """Serve the most recent processed output as an attachment."""
    data = await service.fetch_processed(file_id)
    record = service.get(file_id)
    ext = record.processed_location.rsplit(".", 1)[-1]
    stem = sanitize_filename(record.original_name).rsplit(".", 1)[0] or file_id
    return Response(
        content=data,
        media_type=content_type_for_path(record.processed_location),
        headers={"Content-Disposition": f'attachment; filename="{stem}.{ext}"'},
    )


@router.delete("/images/{file_id}", status_code=204)
async def delete_image(
    file_id: str,
    service: ArtifactService = Depends(get_artifact_service),
):
    """Delete an image, its processed output and its record."""
    await service.delete(file_id)
    return Response(status_code=204)
