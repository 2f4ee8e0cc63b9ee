"""
🔥 THINK ULTRA! Dosegate Detection Router
Dose-response layout detection API endpoints
"""

import asyncio
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, File, HTTPException, UploadFile, status
from pydantic import ValidationError

from dosegate.services.data_extraction import extract_data_points
from dosegate.services.orchestrator import DoseResponseDetector
from shared.config.settings import DetectionSettings, get_detection_settings
from shared.models.dose_response import (
    BoundingBox,
    DataPointExtractionRequest,
    DataPointExtractionResponse,
    DetectionResult,
    DoseResponseAnalysisRequest,
    GateAnalysisRequest,
    WorkbookDetectionResult,
)
from shared.models.sheet_grid import SheetGrid
from shared.services.sheet_grid_parser import SheetGridParseOptions, SheetGridParser
from shared.utils.app_logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/dosegate", tags=["dosegate"])

EXCEL_SUFFIXES = (".xlsx", ".xlsm")
CSV_SUFFIXES = (".csv", ".tsv", ".txt")


def _detection_settings(options: Optional[Dict[str, Any]]) -> DetectionSettings:
    try:
        return get_detection_settings(options or None)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid detection options: {e}")


def _parse_json_object(raw: Optional[str], field: str) -> Dict[str, Any]:
    try:
        value = json.loads(raw) if raw else {}
        if not isinstance(value, dict):
            raise ValueError(f"{field} must be an object")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {field}: {e}")
    return value


async def _read_upload(file: UploadFile, suffixes: tuple, kind: str) -> bytes:
    filename = file.filename or ""
    if not filename.lower().endswith(suffixes):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Only {'/'.join(suffixes)} files are supported for {kind}",
        )
    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")
    return content


async def _analyze_sheet(sheet_grid: SheetGrid, settings: DetectionSettings, source: Dict[str, Any]) -> DetectionResult:
    try:
        result = await asyncio.to_thread(DoseResponseDetector.analyze, sheet_grid.grid, settings=settings)
    except Exception as e:
        logger.error(f"{source['type']} dose-response analysis failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Dose-response analysis failed: {str(e)}",
        )

    result.metadata = {
        **result.metadata,
        "source": source,
        "parse_warnings": sheet_grid.warnings,
    }
    return result


@router.post("/analyze", response_model=DetectionResult)
async def analyze_grid(request: DoseResponseAnalysisRequest) -> DetectionResult:
    """
    Raw sheet grid에서 dose-response 데이터셋을 탐지합니다.

    - Region segmentation (multiple blocks per sheet)
    - Header / concentration / response axes, vertical or horizontal
    - Dilution pattern classification
    - Oversized matrices split into individual curves
    """
    settings = _detection_settings(request.options)
    # trailing blanks only; coordinates of the remaining cells are unchanged
    sheet_grid = SheetGridParser.from_values(request.grid)
    logger.info(f"Analyzing grid with {len(request.grid)} rows")
    result = await _analyze_sheet(sheet_grid, settings, {"type": "grid"})
    logger.info(f"Detection completed: {len(result.candidates)} candidates")
    return result


@router.post("/analyze/gate", response_model=DetectionResult)
async def analyze_gate(request: GateAnalysisRequest) -> DetectionResult:
    """
    사용자가 지정한 gate(bounding box) 안에서만 데이터셋을 탐지합니다.
    Region segmentation and matrix splitting are skipped.
    """
    gate = request.gate
    rows = len(request.grid)
    cols = max((len(r) for r in request.grid), default=0)
    if gate.end_row >= rows or gate.end_col >= cols:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Gate {gate.model_dump()} is outside the {rows}x{cols} grid",
        )

    settings = _detection_settings(request.options)
    try:
        return await asyncio.to_thread(DoseResponseDetector.analyze_gate, request.grid, gate, settings=settings)
    except Exception as e:
        logger.error(f"Gate analysis failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Gate analysis failed: {str(e)}",
        )


@router.post("/analyze/excel", response_model=DetectionResult)
async def analyze_excel(
    file: UploadFile = File(...),
    sheet_name: str | None = None,
    max_rows: int | None = None,
    max_cols: int | None = None,
    options_json: str | None = None,
) -> DetectionResult:
    """
    Excel(.xlsx/.xlsm) 파일을 업로드 받아 grid로 파싱한 뒤 dose-response 탐지를 수행합니다.
    """
    content = await _read_upload(file, EXCEL_SUFFIXES, "Excel analysis")
    settings = _detection_settings(_parse_json_object(options_json, "options_json"))

    try:
        sheet_grid = await asyncio.to_thread(
            SheetGridParser.from_excel_bytes,
            content,
            sheet_name=sheet_name,
            options=SheetGridParseOptions(max_rows=max_rows, max_cols=max_cols),
        )
    except RuntimeError as e:
        # openpyxl missing
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Failed to parse Excel: {e}")

    source = {"type": "excel", "filename": file.filename, "sheet_name": sheet_grid.sheet_name}
    return await _analyze_sheet(sheet_grid, settings, source)


@router.post("/analyze/csv", response_model=DetectionResult)
async def analyze_csv(
    file: UploadFile = File(...),
    delimiter: str | None = None,
    encoding: str = "utf-8-sig",
    max_rows: int | None = None,
    max_cols: int | None = None,
    options_json: str | None = None,
) -> DetectionResult:
    """
    CSV/TSV 파일을 업로드 받아 dose-response 탐지를 수행합니다.
    Delimiter defaults to a tab for .tsv files and a comma otherwise.
    """
    content = await _read_upload(file, CSV_SUFFIXES, "CSV analysis")
    settings = _detection_settings(_parse_json_object(options_json, "options_json"))

    filename = file.filename or ""
    sep = delimiter or ("\t" if filename.lower().endswith(".tsv") else ",")
    if len(sep) != 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="delimiter must be a single character")

    try:
        text = content.decode(encoding)
    except (UnicodeDecodeError, LookupError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Failed to decode CSV: {e}")

    sheet_grid = SheetGridParser.from_csv_text(
        text,
        delimiter=sep,
        options=SheetGridParseOptions(max_rows=max_rows, max_cols=max_cols),
    )
    source = {"type": "csv", "filename": filename, "delimiter": sep}
    return await _analyze_sheet(sheet_grid, settings, source)


@router.post("/analyze/workbook", response_model=WorkbookDetectionResult)
async def analyze_workbook(
    file: UploadFile = File(...),
    sheet_names: str | None = None,
    gate_json: str | None = None,
    max_rows: int | None = None,
    max_cols: int | None = None,
    options_json: str | None = None,
) -> WorkbookDetectionResult:
    """
    Excel workbook의 모든 (또는 선택한) sheet를 분석하고 sheet 간 layout 일관성을 비교합니다.

    - sheet_names: comma separated sheet names (default: every sheet)
    - gate_json: optional bounding box applied to every sheet
    """
    content = await _read_upload(file, EXCEL_SUFFIXES, "workbook analysis")
    settings = _detection_settings(_parse_json_object(options_json, "options_json"))

    gate: BoundingBox | None = None
    if gate_json:
        try:
            gate = BoundingBox(**_parse_json_object(gate_json, "gate_json"))
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid gate_json: {e}")

    selected = [name.strip() for name in sheet_names.split(",") if name.strip()] if sheet_names else None

    try:
        sheet_grids = await asyncio.to_thread(
            SheetGridParser.from_excel_workbook,
            content,
            sheet_names=selected,
            options=SheetGridParseOptions(max_rows=max_rows, max_cols=max_cols),
        )
    except RuntimeError as e:
        # openpyxl missing
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Failed to parse Excel: {e}")

    try:
        result = await asyncio.to_thread(
            DoseResponseDetector.analyze_workbook,
            [(g.sheet_name or f"Sheet{i + 1}", g.grid) for i, g in enumerate(sheet_grids)],
            gate=gate,
            settings=settings,
        )
    except Exception as e:
        logger.error(f"Workbook dose-response analysis failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Workbook dose-response analysis failed: {str(e)}",
        )

    result.metadata = {
        **result.metadata,
        "source": {"type": "excel", "filename": file.filename, "sheet_names": [g.sheet_name for g in sheet_grids]},
        "parse_warnings": {g.sheet_name: g.warnings for g in sheet_grids if g.warnings},
    }
    return result


@router.post("/extract", response_model=DataPointExtractionResponse)
async def extract_points(request: DataPointExtractionRequest) -> DataPointExtractionResponse:
    """탐지된 candidate의 (concentration, responses) 데이터 포인트를 추출합니다."""
    try:
        points = await asyncio.to_thread(extract_data_points, request.grid, request.candidate)
    except TypeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid grid: {e}")
    except Exception as e:
        logger.error(f"Data point extraction failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Data point extraction failed: {str(e)}",
        )
    return DataPointExtractionResponse(candidate_id=request.candidate.id, points=points)
