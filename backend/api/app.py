import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from backend.config import settings
from backend.api.globals import job_manager
from backend.api.routes import jobs, system
from backend.conversion.errors import InvalidStateTransition, JobNotFound, ValidationError

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
  title='Tech Stack Conversion Engine',
  version='0.1.0',
  description='Runs conversion plans against an AI code generation backend with progress tracking.'
)
app.state.manager = job_manager

# CORS
app.add_middleware(
  CORSMiddleware,
  allow_origins=['*'],
  allow_credentials=True,
  allow_methods=['*'],
  allow_headers=['*']
)

@app.exception_handler(ValidationError)
async def plan_validation_handler(request: Request, exc: ValidationError):
  return JSONResponse(status_code=422, content={'message': exc.message, 'detail': exc.to_dict()})

@app.exception_handler(JobNotFound)
async def job_not_found_handler(request: Request, exc: JobNotFound):
  return JSONResponse(status_code=404, content={'message': str(exc), 'job_id': exc.job_id})

@app.exception_handler(InvalidStateTransition)
async def invalid_transition_handler(request: Request, exc: InvalidStateTransition):
  return JSONResponse(
    status_code=409,
    content={
      'message': str(exc),
      'job_id': exc.job_id,
      'action': exc.action,
      'status': exc.current_status
    }
  )

# Global Exception Handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
  logger.error(f"Global exception: {exc}", exc_info=True)
  return JSONResponse(
    status_code=500,
    content={"message": "Internal Server Error", "detail": str(exc)},
  )

# Include Routers
app.include_router(system.router, tags=['System'])
app.include_router(jobs.router, tags=['Jobs'])

@app.on_event('startup')
async def startup_event() -> None:
  await app.state.manager.start()
  logger.info('Backend started on %s:%s', settings.backend_host, settings.backend_port)

@app.on_event('shutdown')
async def shutdown_event() -> None:
  await app.state.manager.shutdown()

@app.get('/')
async def root():
  return {"message": "Tech Stack Conversion Engine API v0.1.0"}
