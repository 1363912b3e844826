from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from job_runner.config.base_config import settings
from job_runner.controllers.run_controller import router as run_controller
from job_runner.database import engine, Base
from job_runner.exceptions.handlers import (
    job_definition_error_handler,
    resource_not_found_handler,
    general_exception_handler,
    value_error_handler
)
from job_runner.exceptions.exceptions import (
    JobDefinitionError,
    ResourceNotFoundError,
)
from job_runner import models  # noqa: F401  registers the tables
from contextlib import asynccontextmanager
import logging


logging.basicConfig(level=settings.LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup code
    Base.metadata.create_all(bind=engine)
    yield
    # Shutdown code


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # adjust to your frontend URL in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register exception handlers
app.add_exception_handler(JobDefinitionError, job_definition_error_handler)
app.add_exception_handler(ResourceNotFoundError, resource_not_found_handler)
app.add_exception_handler(ValueError, value_error_handler)
app.add_exception_handler(Exception, general_exception_handler)

app.include_router(run_controller, prefix="/api")
