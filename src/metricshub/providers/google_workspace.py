"""Google Workspace adapters: Sheets, Docs, Drive and Gmail."""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote

from metricshub.credentials.store import Credential
from metricshub.providers.base import AdapterResult, check_cancelled, operation, require
from metricshub.providers.google import GoogleApiAdapter


def _range(value: Any) -> str:
    return quote(str(value), safe="!:'$")


class GoogleSheetsAdapter(GoogleApiAdapter):
    provider_key = "google_sheets"
    base_url = "https://sheets.googleapis.com/v4/spreadsheets"

    def _values_path(self, params: dict[str, Any], suffix: str = "") -> str:
        require(params, "spreadsheet_id", "range")
        return f"/{params['spreadsheet_id']}/values/{_range(params['range'])}{suffix}"

    @operation("values.read")
    async def read_values(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        body = await self._request(
            "GET",
            self._values_path(params),
            credential,
            params={"valueRenderOption": params.get("value_render_option")},
        )
        return AdapterResult.ok({"range": body.get("range"), "values": body.get("values", [])})

    @operation("values.append")
    async def append_values(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        require(params, "values")
        body = await self._request(
            "POST",
            self._values_path(params, ":append"),
            credential,
            params={
                "valueInputOption": params.get("value_input_option", "USER_ENTERED"),
                "insertDataOption": params.get("insert_data_option", "INSERT_ROWS"),
            },
            json={"values": params["values"]},
        )
        return AdapterResult.ok(body.get("updates", body))

    @operation("values.update")
    async def update_values(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        require(params, "values")
        body = await self._request(
            "PUT",
            self._values_path(params),
            credential,
            params={"valueInputOption": params.get("value_input_option", "USER_ENTERED")},
            json={"values": params["values"]},
        )
        return AdapterResult.ok(body)

    @operation("values.clear")
    async def clear_values(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        body = await self._request("POST", self._values_path(params, ":clear"), credential, json={})
        return AdapterResult.ok(body)


class GoogleDocsAdapter(GoogleApiAdapter):
    provider_key = "google_docs"
    base_url = "https://docs.googleapis.com/v1/documents"

    @operation("documents.get")
    async def get_document(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        require(params, "document_id")
        return AdapterResult.ok(await self._request("GET", f"/{params['document_id']}", credential))

    @operation("documents.create")
    async def create_document(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        require(params, "title")
        doc = await self._request("POST", "", credential, json={"title": params["title"]})
        content = params.get("content")
        if content:
            check_cancelled(cancel)
            await self._request(
                "POST",
                f"/{doc['documentId']}:batchUpdate",
                credential,
                json={"requests": [{"insertText": {"location": {"index": 1}, "text": str(content)}}]},
            )
        return AdapterResult.ok({"documentId": doc.get("documentId"), "title": doc.get("title")})


class GoogleDriveAdapter(GoogleApiAdapter):
    provider_key = "google_drive"
    base_url = "https://www.googleapis.com/drive/v3"

    @operation("files.list")
    async def list_files(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        return await self._paginate(
            "GET",
            "/files",
            credential,
            items_key="files",
            params={
                "q": params.get("query"),
                "pageSize": params.get("page_size", 100),
                "orderBy": params.get("order_by"),
                "fields": "nextPageToken, files(id,name,mimeType,modifiedTime,size)",
            },
            cancel=cancel,
            page_token=params.get("page_token"),
            max_pages=params.get("max_pages"),
        )

    @operation("files.get")
    async def get_file(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        require(params, "file_id")
        body = await self._request(
            "GET",
            f"/files/{params['file_id']}",
            credential,
            params={"fields": params.get("fields", "id,name,mimeType,modifiedTime,size,owners")},
        )
        return AdapterResult.ok(body)


class GmailAdapter(GoogleApiAdapter):
    provider_key = "gmail"
    base_url = "https://gmail.googleapis.com/gmail/v1/users/me"

    @operation("messages.list")
    async def list_messages(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        listed = await self._paginate(
            "GET",
            "/messages",
            credential,
            items_key="messages",
            params={
                "q": params.get("query"),
                "labelIds": params.get("label_ids"),
                "maxResults": params.get("page_size", 100),
            },
            cancel=cancel,
            page_token=params.get("page_token"),
            max_pages=params.get("max_pages"),
        )
        if not params.get("include_details"):
            return listed

        detailed = []
        for ref in listed.data["messages"]:
            check_cancelled(cancel)
            detailed.append(await self._request(
                "GET",
                f"/messages/{ref['id']}",
                credential,
                params={"format": "metadata", "metadataHeaders": ["Subject", "From", "Date"]},
            ))
        return AdapterResult.ok(
            {**listed.data, "messages": detailed},
            continuation=listed.continuation,
            pages=listed.pages,
        )

    @operation("messages.get")
    async def get_message(self, credential: Credential, params: dict[str, Any], cancel: asyncio.Event | None) -> AdapterResult:
        require(params, "message_id")
        body = await self._request(
            "GET",
            f"/messages/{params['message_id']}",
            credential,
            params={"format": params.get("format", "full")},
        )
        return AdapterResult.ok(body)
