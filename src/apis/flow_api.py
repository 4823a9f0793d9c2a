from fastapi import APIRouter
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_service import FlowService
from services.trigger_identification_service import TriggerIdentificationService
from services.classifier_service import ClassifierService

# Models
from models.request.flow_match_request import FlowMatchRequest

# Exceptions
from exceptions.flow_exception import FlowException, FlowValidationException


def create_flow_api(
    log_util: LogUtil,
    flow_service: FlowService,
    trigger_identification_service: TriggerIdentificationService,
    classifier_service: ClassifierService
) -> APIRouter:
    router = APIRouter(
        prefix="/flow",
        tags=["flow"],
    )

    @router.get("/list")
    async def get_flows_list():
        try:
            return await flow_service.get_flows_list()
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flows list: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flows list: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/detail/{flow_id}")
    async def get_flow_detail(flow_id: str):
        try:
            flow = await flow_service.get_flow_detail(flow_id=flow_id)
            return flow.model_dump(by_alias=True)
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow detail: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error getting flow detail: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/reload")
    async def reload_flows():
        """Reload active flows from the database without waiting for the refresh interval."""
        try:
            flows = await flow_service.reload_flows()
            return {"status": "success", "active_flows": len(flows), "slugs": [flow.slug for flow in flows]}
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error reloading flows: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error reloading flows: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/match")
    async def match_flow(request: FlowMatchRequest):
        """
        Dry-run trigger evaluation. Nothing is sent and no session is created.

        Request body:
        {
            "text": "tengo un problema con mi pedido",
            "classification": null
        }
        """
        try:
            if not request.text.strip():
                raise FlowValidationException(message="text must not be empty")
            classification = request.classification or await classifier_service.classify(request.text)
            evaluation = await trigger_identification_service.evaluate_all(request.text, classification)
            evaluation["classification"] = classification.model_dump(by_alias=True)
            return evaluation
        except FlowException as e:
            log_util.error(service_name="FlowAPI", message=f"Error matching flow: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)
        except Exception as e:
            log_util.error(service_name="FlowAPI", message=f"Error matching flow: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return router
