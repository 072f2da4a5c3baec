"""Tests for DriveSession: views, optimistic mutations, trash and analysis."""
import asyncio

import pytest

from clouddrive.schemas.drive import DriveView, ItemKind
from clouddrive.services.drive_session import DriveSession
from clouddrive.services.errors import ValidationError
from clouddrive.services.identity import StaticIdentityProvider

from conftest import BUCKET


def names(items):
    return [i.name for i in items]


async def upload(session, name="report.pdf", size=2048, mime_type="application/pdf", data=None):
    result = await session.upload_file(data if data is not None else b"x" * size, name, mime_type)
    assert result.ok, result
    return result.item_id


class TestScenarios:

    @pytest.mark.asyncio
    async def test_star_trash_restore_round_trip(self, session):
        file_id = await upload(session, "report.pdf", 2048)
        assert session.total_storage_used == 2048

        assert (await session.toggle_star(file_id)).ok
        session.change_view(DriveView.STARRED)
        assert names(session.files) == ["report.pdf"]

        session.change_view(DriveView.DRIVE)
        assert (await session.delete_item(file_id, ItemKind.FILE)).ok
        assert session.files == []
        assert session.total_storage_used == 0
        session.change_view(DriveView.STARRED)
        assert session.files == []
        session.change_view(DriveView.RECENT)
        assert session.files == []
        session.change_view(DriveView.TRASH)
        assert names(session.files) == ["report.pdf"]
        assert session.files[0].is_starred is True

        assert (await session.restore_item(file_id, ItemKind.FILE)).ok
        session.change_view(DriveView.DRIVE)
        assert names(session.files) == ["report.pdf"]
        restored = session.files[0]
        assert (restored.name, restored.size_bytes, restored.folder_id) == ("report.pdf", 2048, None)
        session.change_view(DriveView.STARRED)
        assert names(session.files) == ["report.pdf"]

        result = await session.empty_trash()
        assert result.ok
        assert session.total_storage_used == 2048

    @pytest.mark.asyncio
    async def test_folder_navigation(self, session):
        folder_result = await session.create_folder("Photos")
        assert folder_result.ok
        photos_id = folder_result.item_id

        assert session.navigate_to(photos_id).ok
        await upload(session, "cat.png", 1_000_000, "image/png")
        assert names(session.files) == ["cat.png"]
        assert names(session.breadcrumbs) == ["Photos"]

        assert session.navigate_to(None).ok
        assert session.files == []
        assert names(session.folders) == ["Photos"]
        assert session.breadcrumbs == []
        assert session.total_storage_used == 1_000_000


class TestLoading:

    @pytest.mark.asyncio
    async def test_seeds_defaults_once(self, identity, repository):
        drive = DriveSession(identity, repository)
        assert (await drive.refresh()).ok
        assert sorted(names(drive.folders)) == ["Documents", "Images", "Work"]
        await drive.refresh()
        second = DriveSession(identity, repository)
        await second.refresh()
        assert len(await repository.list_root_folders("alice")) == 3

    @pytest.mark.asyncio
    async def test_failed_load_keeps_last_good_projection(self, session, metadata):
        await upload(session)
        metadata.fail_reads = True
        result = await session.refresh()
        assert not result.ok
        assert result.error_code == "remote_read_failed"
        assert names(session.files) == ["report.pdf"]
        assert session.last_error == result
        assert session.is_loading is False

    @pytest.mark.asyncio
    async def test_stale_load_is_discarded(self, session, repository, metadata):
        metadata.read_delay = 0.05
        slow = asyncio.create_task(session.refresh())
        await asyncio.sleep(0.01)

        metadata.read_delay = 0
        new_folder = await repository.create_folder("alice", "New")
        assert (await session.refresh()).ok
        await metadata.delete_document("folders", new_folder.id)

        assert (await slow).ok
        assert names(session.folders) == ["New"]

    @pytest.mark.asyncio
    async def test_unauthenticated_commands_fail_fast(self, repository, blobs):
        drive = DriveSession(StaticIdentityProvider(), repository)
        result = await drive.upload_file(b"x", "a.txt", "text/plain")
        assert result.error_code == "unauthenticated"
        assert (await drive.create_folder("Docs")).error_code == "unauthenticated"
        assert (await drive.refresh()).error_code == "unauthenticated"
        assert await blobs.list_ids(BUCKET) == []

    @pytest.mark.asyncio
    async def test_auth_change_switches_owner(self, session, identity, bob):
        await upload(session)
        await identity.sign_in(bob)
        assert session.owner_id == "bob"
        assert session.files == []

        await identity.sign_out()
        assert session.owner_id is None
        assert session.files == []
        assert session.view == DriveView.DRIVE


class TestNavigation:

    @pytest.mark.asyncio
    async def test_navigation_only_in_drive_view(self, session):
        folder_id = (await session.create_folder("Docs")).item_id
        session.change_view(DriveView.RECENT)
        result = session.navigate_to(folder_id)
        assert result.error_code == "invalid_input"
        assert session.current_folder_id is None

    @pytest.mark.asyncio
    async def test_cannot_open_trashed_or_missing_folder(self, session):
        folder_id = (await session.create_folder("Docs")).item_id
        await session.delete_item(folder_id, ItemKind.FOLDER)
        assert session.navigate_to(folder_id).error_code == "invalid_input"
        assert session.navigate_to("missing").error_code == "not_found"

    @pytest.mark.asyncio
    async def test_change_view_resets_folder_and_selection(self, session):
        folder_id = (await session.create_folder("Docs")).item_id
        session.navigate_to(folder_id)
        file_id = await upload(session)
        assert session.select_file(file_id).ok
        session.change_view(DriveView.RECENT)
        assert session.current_folder_id is None
        assert session.selected_file is None

    @pytest.mark.asyncio
    async def test_upload_outside_drive_goes_to_root(self, session):
        folder_id = (await session.create_folder("Docs")).item_id
        session.navigate_to(folder_id)
        session.change_view(DriveView.RECENT)
        file_id = await upload(session)
        session.change_view(DriveView.DRIVE)
        assert [f.id for f in session.files] == [file_id]

    @pytest.mark.asyncio
    async def test_selected_file_follows_mutations(self, session):
        file_id = await upload(session)
        session.select_file(file_id)
        await session.toggle_star(file_id)
        assert session.selected_file.is_starred is True
        assert session.state().selected_file_id == file_id


class TestMutations:

    @pytest.mark.asyncio
    async def test_star_twice_is_identity(self, session):
        file_id = await upload(session)
        await session.toggle_star(file_id)
        await session.toggle_star(file_id)
        assert session.files[0].is_starred is False

    @pytest.mark.asyncio
    async def test_failed_star_rolls_back(self, session, metadata):
        file_id = await upload(session)
        metadata.fail_on.add(("update", "files", file_id))
        result = await session.toggle_star(file_id)
        assert not result.ok
        assert result.error_code == "remote_write_failed"
        assert session.files[0].is_starred is False
        assert session.last_error == result

    @pytest.mark.asyncio
    async def test_failed_soft_delete_rolls_back(self, session, metadata):
        file_id = await upload(session)
        metadata.fail_on.add(("update", "files", file_id))
        assert not (await session.delete_item(file_id, ItemKind.FILE)).ok
        assert [f.id for f in session.files] == [file_id]
        assert session.total_storage_used == 2048

    @pytest.mark.asyncio
    async def test_failed_restore_rolls_back(self, session, metadata):
        file_id = await upload(session)
        await session.delete_item(file_id, ItemKind.FILE)
        metadata.fail_on.add(("update", "files", file_id))
        session.change_view(DriveView.TRASH)
        assert not (await session.restore_item(file_id, ItemKind.FILE)).ok
        assert [f.id for f in session.files] == [file_id]
        assert session.files[0].is_trashed is True

    @pytest.mark.asyncio
    async def test_permanent_delete_is_final(self, session, blobs):
        file_id = await upload(session)
        await session.delete_item(file_id, ItemKind.FILE)
        session.change_view(DriveView.TRASH)
        assert (await session.delete_item(file_id, ItemKind.FILE)).ok
        assert session.files == []
        assert await blobs.list_ids(BUCKET) == []

        result = await session.restore_item(file_id, ItemKind.FILE)
        assert not result.ok
        assert result.error_code == "not_found"

    @pytest.mark.asyncio
    async def test_failed_permanent_delete_rolls_back(self, session, blobs):
        file_id = await upload(session)
        await session.delete_item(file_id, ItemKind.FILE)
        session.change_view(DriveView.TRASH)
        blobs.fail_delete = True
        assert not (await session.delete_item(file_id, ItemKind.FILE)).ok
        assert [f.id for f in session.files] == [file_id]

    @pytest.mark.asyncio
    async def test_permanent_folder_delete_removes_contents(self, session, repository):
        folder_id = (await session.create_folder("Docs")).item_id
        session.navigate_to(folder_id)
        sub_id = (await session.create_folder("Sub")).item_id
        session.navigate_to(sub_id)
        await upload(session, "deep.txt", 4, "text/plain")
        session.navigate_to(None)

        await session.delete_item(folder_id, ItemKind.FOLDER)
        session.change_view(DriveView.TRASH)
        assert names(session.folders) == ["Docs"]
        assert (await session.delete_item(folder_id, ItemKind.FOLDER)).ok

        assert await repository.list_folders("alice") == []
        assert await repository.list_files("alice") == []
        assert session.total_storage_used == 0

    @pytest.mark.asyncio
    async def test_partial_folder_cascade_reloads_instead_of_rolling_back(self, session, repository, metadata):
        folder_id = (await session.create_folder("F")).item_id
        session.navigate_to(folder_id)
        await upload(session, "a.pdf")
        second = await upload(session, "b.pdf")
        session.navigate_to(None)
        await session.delete_item(folder_id, ItemKind.FOLDER)
        session.change_view(DriveView.TRASH)
        metadata.fail_on.add(("delete", "files", second))

        result = await session.delete_item(folder_id, ItemKind.FOLDER)

        assert not result.ok
        assert result.error_code == "remote_write_failed"
        assert session.last_error == result
        assert [f.id for f in await repository.list_files("alice")] == [second]
        assert session.total_storage_used == 2048
        assert names(session.folders) == ["F"]
        assert (await session.restore_item(folder_id, ItemKind.FOLDER)).ok
        session.change_view(DriveView.DRIVE)
        session.navigate_to(folder_id)
        assert [f.id for f in session.files] == [second]

    @pytest.mark.asyncio
    async def test_rename(self, session):
        file_id = await upload(session)
        assert (await session.rename_item(file_id, ItemKind.FILE, " final.pdf ")).ok
        assert names(session.files) == ["final.pdf"]
        assert (await session.rename_item(file_id, ItemKind.FILE, "  ")).error_code == "invalid_input"
        assert names(session.files) == ["final.pdf"]

    @pytest.mark.asyncio
    async def test_move_file_into_folder(self, session):
        folder_id = (await session.create_folder("Docs")).item_id
        file_id = await upload(session)
        assert (await session.move_item(file_id, ItemKind.FILE, folder_id)).ok
        assert session.files == []
        session.navigate_to(folder_id)
        assert [f.id for f in session.files] == [file_id]

    @pytest.mark.asyncio
    async def test_move_folder_into_descendant_rejected(self, session):
        parent_id = (await session.create_folder("Parent")).item_id
        session.navigate_to(parent_id)
        child_id = (await session.create_folder("Child")).item_id
        session.navigate_to(None)

        result = await session.move_item(parent_id, ItemKind.FOLDER, child_id)
        assert result.error_code == "folder_cycle"
        assert names(session.folders) == ["Parent"]

    @pytest.mark.asyncio
    async def test_unknown_kind_rejected(self, session):
        assert (await session.delete_item("x", "document")).error_code == "invalid_input"


class TestEmptyTrash:

    @pytest.mark.asyncio
    async def test_empty_trash_reports_failed_ids(self, session, metadata):
        first = await upload(session, "a.pdf")
        second = await upload(session, "b.pdf")
        await session.delete_item(first, ItemKind.FILE)
        await session.delete_item(second, ItemKind.FILE)
        metadata.fail_on.add(("delete", "files", first))

        result = await session.empty_trash()

        assert not result.ok
        assert result.error_code == "bulk_partial_failure"
        assert result.failed_ids == [first]
        session.change_view(DriveView.TRASH)
        assert [f.id for f in session.files] == [first]

    @pytest.mark.asyncio
    async def test_empty_trash_with_nested_trashed_folders(self, session, repository):
        outer = (await session.create_folder("Outer")).item_id
        session.navigate_to(outer)
        inner = (await session.create_folder("Inner")).item_id
        session.navigate_to(None)
        await session.delete_item(inner, ItemKind.FOLDER)
        await session.delete_item(outer, ItemKind.FOLDER)

        assert (await session.empty_trash()).ok
        assert await repository.list_folders("alice") == []

    @pytest.mark.asyncio
    async def test_empty_trash_reports_failed_reload(self, session, metadata, repository):
        file_id = await upload(session, "a.pdf")
        await session.delete_item(file_id, ItemKind.FILE)
        # the two trash listings succeed, the reload after the deletes fails
        metadata.reads_left = 2

        result = await session.empty_trash()

        assert not result.ok
        assert result.error_code == "remote_read_failed"
        assert session.last_error == result
        session.change_view(DriveView.TRASH)
        assert session.files == []
        metadata.reads_left = None
        assert await repository.list_files("alice") == []

    @pytest.mark.asyncio
    async def test_empty_trash_leaves_live_items(self, session):
        keep = await upload(session, "keep.pdf")
        gone = await upload(session, "gone.pdf")
        await session.delete_item(gone, ItemKind.FILE)
        assert (await session.empty_trash()).ok
        assert [f.id for f in session.files] == [keep]


class TestAnalysis:

    @pytest.mark.asyncio
    async def test_upload_schedules_and_persists_analysis(self, session, repository):
        file_id = await upload(session, "cat.png", 10, "image/png")
        assert session.analyzing_file_id == file_id

        await session.wait_for_analysis()

        assert session.analyzing_file_id is None
        cached = session.files[0]
        assert cached.summary == "A cat."
        assert cached.tags == ["cat", "pet"]
        stored = await repository.get_file("alice", file_id)
        assert stored.summary == "A cat."

    @pytest.mark.asyncio
    async def test_unsupported_result_is_not_persisted(self, session, llm):
        await upload(session, "report.pdf")
        await session.wait_for_analysis()
        assert session.files[0].summary is None
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_on_demand_analysis_of_text(self, session, llm):
        file_id = await upload(session, "notes.txt", data=b"meeting notes", mime_type="text/plain")
        await session.wait_for_analysis()
        result = await session.analyze_file(file_id)
        assert result.summary == "A file."
        assert "meeting notes" in llm.calls[-1]["prompt"]

    @pytest.mark.asyncio
    async def test_chat_about_file(self, session, llm):
        llm.text = "Those are meeting notes."
        file_id = await upload(session, "notes.txt", data=b"meeting notes", mime_type="text/plain")
        reply = await session.chat(file_id, "What is this?")
        assert reply == "Those are meeting notes."
        with pytest.raises(ValidationError):
            await session.chat(file_id, "   ")


class TestBlobAccess:

    @pytest.mark.asyncio
    async def test_urls_and_bytes(self, session):
        file_id = await upload(session, data=b"pdf-bytes")
        assert await session.download_url(file_id) == f"memory://{BUCKET}/{file_id}"
        assert await session.preview_url(file_id, 100, 50, 90) == (
            f"memory://{BUCKET}/{file_id}?width=100&height=50&quality=90"
        )
        assert await session.read_file_bytes(file_id) == b"pdf-bytes"

    @pytest.mark.asyncio
    async def test_trashed_file_cannot_be_downloaded(self, session):
        file_id = await upload(session)
        await session.delete_item(file_id, ItemKind.FILE)
        with pytest.raises(ValidationError):
            await session.download_url(file_id)
