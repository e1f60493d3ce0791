import logging

from fastapi import Depends, FastAPI, HTTPException, Request

from print_agent.env import AGENT_ID, AGENT_NAME
from print_agent.models import PrintBatchIn, PrintJobIn
from print_agent.security import verify_agent_token
from print_agent.service import PrintAgent

logger = logging.getLogger(__name__)

app = FastAPI(title="POS Print Agent")


@app.on_event("startup")
async def _startup():
    # tests install their own agent before startup
    if getattr(app.state, "agent", None) is None:
        app.state.agent = PrintAgent()
    await app.state.agent.start()


@app.on_event("shutdown")
async def _shutdown():
    await app.state.agent.stop()


def get_agent(request: Request) -> PrintAgent:
    return request.app.state.agent


def _payload_of(item: PrintJobIn):
    try:
        return item.build_payload()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/health")
def health():
    # public: liveness only, nothing sensitive
    return {"ok": True, "agent_id": AGENT_ID, "name": AGENT_NAME}


@app.get("/status", dependencies=[Depends(verify_agent_token)])
def status(agent: PrintAgent = Depends(get_agent)):
    return {
        "ok": True,
        "agent_id": AGENT_ID,
        "name": AGENT_NAME,
        **agent.state(),
    }


@app.get("/printers", dependencies=[Depends(verify_agent_token)])
def list_printers(agent: PrintAgent = Depends(get_agent)):
    return agent.enumerate_devices().model_dump()


@app.post("/jobs", dependencies=[Depends(verify_agent_token)])
async def create_job(payload: PrintJobIn, agent: PrintAgent = Depends(get_agent)):
    data = _payload_of(payload)
    try:
        if payload.wait:
            result = await agent.submit(payload.printer, payload.job_type, data, copies=payload.copies)
            return result.model_dump()
        jobs = agent.enqueue(payload.printer, payload.job_type, data, copies=payload.copies)
    except RuntimeError as e:
        raise HTTPException(status_code=429, detail=str(e))
    if len(jobs) == 1:
        return jobs[0].model_dump(mode="json")
    return {"jobs": [j.model_dump(mode="json") for j in jobs]}


@app.post("/jobs/batch", dependencies=[Depends(verify_agent_token)])
async def create_batch(payload: PrintBatchIn, agent: PrintAgent = Depends(get_agent)):
    requests = []
    for item in payload.jobs:
        data = _payload_of(item)
        requests.extend(
            {"target_printer": item.printer, "job_type": item.job_type, "payload": data}
            for _ in range(item.copies)
        )
    try:
        result = await agent.submit_batch(requests)
    except RuntimeError as e:
        raise HTTPException(status_code=429, detail=str(e))
    return result.model_dump()


@app.get("/jobs/{job_id}", dependencies=[Depends(verify_agent_token)])
async def job_status(job_id: str, agent: PrintAgent = Depends(get_agent)):
    job = agent.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.delete("/jobs/{job_id}", dependencies=[Depends(verify_agent_token)])
async def cancel_job(job_id: str, agent: PrintAgent = Depends(get_agent)):
    job = agent.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if not agent.cancel_job(job_id):
        raise HTTPException(status_code=409, detail=f"Job is {job['status']}, only queued jobs can be cancelled")
    return agent.get_job(job_id)


@app.post("/printers/{name}/diagnostic", dependencies=[Depends(verify_agent_token)])
async def run_diagnostic(name: str, agent: PrintAgent = Depends(get_agent)):
    return (await agent.run_diagnostic(name)).model_dump()


@app.get("/spooler", dependencies=[Depends(verify_agent_token)])
def spooler_status(agent: PrintAgent = Depends(get_agent)):
    return agent.spooler_status()


@app.post("/spooler/repair", dependencies=[Depends(verify_agent_token)])
async def repair_spooler(agent: PrintAgent = Depends(get_agent)):
    return (await agent.repair_spooler()).model_dump()
