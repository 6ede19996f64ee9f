from contractdesk.schemas.agreements import AgreementCreate, AgreementResponse, AgreementUpdate, SigningPageResponse
from contractdesk.schemas.projects import RosterResponse, RosterUpdate
