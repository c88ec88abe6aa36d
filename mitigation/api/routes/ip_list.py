from fastapi import APIRouter, Depends, HTTPException, status
from mitigation.api.dependencies import get_engine
from mitigation.engine import MitigationEngine
from mitigation.models.ip_list import IPListType
from mitigation.schemas.ip_list import CleanupResponse, IPListCreate, IPListResponse, IPStatusResponse

router = APIRouter(prefix="/api/mitigation/ip-lists", tags=["ip-list"])


@router.post("", response_model=IPListResponse, status_code=status.HTTP_201_CREATED)
def add_ip(ip_data: IPListCreate, engine: MitigationEngine = Depends(get_engine)):
    return engine.add_ip_to_list(
        ip_data.ip_address,
        ip_data.list_type,
        ip_data.reason,
        ip_data.ttl_seconds,
        ip_data.created_by
    )


@router.get("/status/{ip_address}", response_model=IPStatusResponse)
def ip_status(ip_address: str, engine: MitigationEngine = Depends(get_engine)):
    result = engine.ip_status(ip_address)
    return IPStatusResponse(
        ip_address=ip_address,
        status=result.status,
        remaining_ttl=result.remaining_ttl,
        reason=result.reason
    )


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_expired(engine: MitigationEngine = Depends(get_engine)):
    return CleanupResponse(removed=engine.cleanup_expired_blocks())


@router.get("/{list_type}", response_model=list[IPListResponse])
def list_ips(list_type: IPListType, engine: MitigationEngine = Depends(get_engine)):
    return engine.list_ips_in_list(list_type)


@router.delete("/{list_type}/{ip_address}", status_code=status.HTTP_204_NO_CONTENT)
def remove_ip(list_type: IPListType, ip_address: str, engine: MitigationEngine = Depends(get_engine)):
    if engine.remove_ip_from_list(ip_address, list_type) == 0:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"IP not found in {list_type.value} list"
        )
    return None
